import argparse
import logging
import shlex
import sys

from emailpipe_harness.config import HarnessConfig
from emailpipe_harness.harness import DEFAULT_COUNTS, run

log_fmt = r"%(asctime)-15s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
datefmt = "%Y-%m-%d %H:%M:%S"


def positive_int(value: str) -> int:
    count = int(value)
    if count < 1:
        raise argparse.ArgumentTypeError(f"count must be a positive integer, got {value}")
    return count


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="emailpipe_harness",
        description="Probe an SMTP to HTTP notification pipeline for delivery and isolation.",
    )
    parser.add_argument(
        "--count",
        dest="counts",
        type=positive_int,
        action="append",
        help="probe rounds per scenario, repeatable (default: 1 and 2)",
    )
    parser.add_argument(
        "--pipeline-cmd",
        help="command starting the pipeline under test; empty to use a running one",
    )
    parser.add_argument(
        "--until-eof",
        action="store_true",
        help="keep draining a session until its stream closes",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        format=log_fmt,
        level=logging.DEBUG if args.verbose else logging.WARNING,
        datefmt=datefmt,
    )
    logging.getLogger("httpx").setLevel(logging.INFO)
    logging.getLogger("httpcore").setLevel(logging.INFO)

    config = HarnessConfig()
    if args.pipeline_cmd is not None:
        config.pipeline_cmd = shlex.split(args.pipeline_cmd)
    if args.until_eof:
        config.drain_until_eof = True

    ok = run(config, args.counts or DEFAULT_COUNTS)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
