import logging
from typing import Callable, Iterable, List

from emailpipe_harness.config import HarnessConfig
from emailpipe_harness.lifecycle import ProcessLifecycle
from emailpipe_harness.scenario import (
    DualScenarioRunner,
    RoundResult,
    ScenarioRunner,
    Submitter,
    failed,
)
from emailpipe_harness.submit import MailSubmitter

logger = logging.getLogger(__name__)

DEFAULT_COUNTS = (1, 2)


def make_submitter(config: HarnessConfig) -> MailSubmitter:
    host, port = config.smtp_address
    return MailSubmitter(host, port, timeout=config.smtp_timeout)


def _runner_options(config: HarnessConfig, report: Callable[[str], None]) -> dict:
    return dict(
        wait=config.line_wait,
        until_eof=config.drain_until_eof,
        drain_timeout=config.drain_timeout,
        report=report,
    )


def run_single_scenario(
    config: HarnessConfig,
    count: int = 1,
    submitter: Submitter = None,
    report: Callable[[str], None] = print,
) -> List[RoundResult]:
    """One listener, ``count`` round-trip rounds. The listener is stopped afterwards."""
    report(f"single scenario (count: {count})")
    submitter = submitter or make_submitter(config)
    with ProcessLifecycle(config) as procs:
        session = procs.open_session()
        runner = ScenarioRunner(session, submitter, **_runner_options(config, report))
        runner.run(count)
        return runner.results


def run_dual_scenario(
    config: HarnessConfig,
    count: int = 1,
    submitter: Submitter = None,
    report: Callable[[str], None] = print,
) -> List[RoundResult]:
    """Two listeners, ``count`` round-trip and isolation rounds."""
    report(f"dual scenario (count: {count})")
    submitter = submitter or make_submitter(config)
    with ProcessLifecycle(config) as procs:
        first = procs.open_session()
        second = procs.open_session()
        runner = DualScenarioRunner(
            first, second, submitter, **_runner_options(config, report)
        )
        return runner.run(count)


def run(
    config: HarnessConfig,
    counts: Iterable[int] = DEFAULT_COUNTS,
    report: Callable[[str], None] = print,
) -> bool:
    """Start the pipeline, then run the single and dual scenarios for every count.

    Returns True iff every round of every scenario passed.
    """
    counts = list(counts)
    results: List[RoundResult] = []
    with ProcessLifecycle(config) as procs:
        procs.start_pipeline()
        for count in counts:
            results.extend(run_single_scenario(config, count, report=report))
        for count in counts:
            results.extend(run_dual_scenario(config, count, report=report))

    failures = failed(results)
    logger.info(f"{len(results) - len(failures)}/{len(results)} rounds passed")
    return not failures
