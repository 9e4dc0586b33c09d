from __future__ import annotations
import os

# Waste detector: matrices with more combinations than this are flagged.
MATRIX_COMBINATION_THRESHOLD = int(os.environ.get("PIPELINEX_MATRIX_THRESHOLD", "12"))

# Cost defaults
RUNS_PER_MONTH = int(os.environ.get("PIPELINEX_RUNS_PER_MONTH", "500"))
TEAM_SIZE = int(os.environ.get("PIPELINEX_TEAM_SIZE", "10"))
HOURLY_RATE = float(os.environ.get("PIPELINEX_HOURLY_RATE", "150"))

# Monte Carlo defaults
SIMULATION_RUNS = int(os.environ.get("PIPELINEX_SIMULATION_RUNS", "1000"))
SIMULATION_VARIANCE = float(os.environ.get("PIPELINEX_SIMULATION_VARIANCE", "0.15"))
SIMULATION_SEED = int(os.environ.get("PIPELINEX_SIMULATION_SEED", "42"))
SIMULATION_WORKERS = int(os.environ.get("PIPELINEX_SIMULATION_WORKERS", "0")) or None

# Success rate assumed by the health score when no history is supplied.
DEFAULT_SUCCESS_RATE = float(os.environ.get("PIPELINEX_DEFAULT_SUCCESS_RATE", "0.95"))

# Seconds a warm dependency cache saves per run, per ecosystem.
CACHE_SAVINGS_SECS = {
    "npm": float(os.environ.get("PIPELINEX_CACHE_SAVINGS_NPM", "150")),
    "pip": float(os.environ.get("PIPELINEX_CACHE_SAVINGS_PIP", "90")),
    "cargo": float(os.environ.get("PIPELINEX_CACHE_SAVINGS_CARGO", "240")),
    "gradle": float(os.environ.get("PIPELINEX_CACHE_SAVINGS_GRADLE", "120")),
    "docker": float(os.environ.get("PIPELINEX_CACHE_SAVINGS_DOCKER", "240")),
}
