from __future__ import annotations

import textwrap
from typing import Iterable

import pytest

from pipelinex.dag import PipelineDag, build_dag
from pipelinex.model import Job, Provider, Step, StepKind, Trigger
from pipelinex.parser import parse

# lint(250) -> test(490) -> build(445) -> deploy(135); build also needs lint.
GITHUB_CI = textwrap.dedent("""\
    name: CI
    on:
      push:
        branches: [main]
      pull_request:
    jobs:
      lint:
        runs-on: ubuntu-latest
        steps:
          - uses: actions/checkout@v4
          - run: npm ci
          - run: npm run lint
      test:
        needs: lint
        runs-on: ubuntu-latest
        steps:
          - uses: actions/checkout@v4
          - run: npm ci
          - run: npm test
      build:
        needs: [lint, test]
        runs-on: ubuntu-latest
        steps:
          - uses: actions/checkout@v4
          - run: npm ci
          - run: npm run build
          - uses: actions/upload-artifact@v4
            with:
              name: dist
              path: dist
      deploy:
        needs: build
        runs-on: ubuntu-latest
        environment: production
        steps:
          - uses: actions/download-artifact@v4
            with:
              name: dist
          - run: ./deploy.sh
    """)

# build(430) -> unit(490) -> deploy(130); lint(70) has `needs: []`.
GITLAB_CI = textwrap.dedent("""\
    stages:
      - build
      - test
      - deploy

    default:
      image: node:20

    build:
      stage: build
      script:
        - npm ci
        - npm run build
      artifacts:
        paths:
          - dist/

    unit:
      stage: test
      script:
        - npm ci
        - npm test

    lint:
      stage: test
      needs: []
      script:
        - npm run lint

    deploy:
      stage: deploy
      environment: production
      script:
        - ./deploy.sh
    """)

MATRIX_CI = textwrap.dedent("""\
    name: Matrix
    on: push
    concurrency:
      group: ci-${{ github.ref }}
      cancel-in-progress: true
    jobs:
      test:
        runs-on: ubuntu-latest
        strategy:
          matrix:
            os: [ubuntu-latest, windows-latest, macos-latest]
            node: [16, 18, 20, 22]
            python: ["3.10", "3.11"]
        steps:
          - uses: actions/checkout@v4
            with:
              fetch-depth: 1
          - run: make check
    """)


@pytest.fixture
def github_dag() -> PipelineDag:
    return parse(GITHUB_CI, Provider.GITHUB, ".github/workflows/ci.yml")


@pytest.fixture
def gitlab_dag() -> PipelineDag:
    return parse(GITLAB_CI, Provider.GITLAB, ".gitlab-ci.yml")


@pytest.fixture
def matrix_dag() -> PipelineDag:
    return parse(MATRIX_CI, Provider.GITHUB, ".github/workflows/matrix.yml")


def make_job(name: str, secs: float, needs: Iterable[str] = (), **kwargs) -> Job:
    """A job with a single step of the given duration."""
    step = Step(name=f"{name} step", kind=StepKind.RUN, run="echo", duration_secs=secs)
    return Job(name=name, steps=(step,), needs=tuple(needs), **kwargs)


def make_dag(*jobs: Job, provider: Provider = Provider.GITHUB) -> PipelineDag:
    return build_dag(
        jobs,
        name="test",
        source_file="test.yml",
        provider=provider,
        triggers=[Trigger("push")],
    )
