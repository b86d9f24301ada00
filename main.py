from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
from datetime import datetime
from typing import Optional

from serprank.config import HttpSettings, load_run_config
from serprank.factory import ExecutorFactory, build_captcha_gate
from serprank.metrics import MetricsCollector
from serprank.models import Run, RunStatus
from serprank.run import RunController
from serprank.storage import JsonlRankStore


DEFAULT_CONFIG_PATH = "run_config.json"
DEFAULT_RESULTS_PATH = "results.jsonl"


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def run_check(
    config_path: str,
    results_path: str,
    max_threads: Optional[int],
    shuffle: bool,
    user_agent: Optional[str],
    timeout_ms: Optional[int],
) -> RunStatus:
    config = load_run_config(config_path)

    options = config.options
    http = HttpSettings(
        user_agent=user_agent or options.http.user_agent,
        timeout_ms=timeout_ms or options.http.timeout_ms,
    )
    options = dataclasses.replace(
        options,
        http=http,
        max_threads=max_threads or options.max_threads,
        shuffle=options.shuffle and shuffle,
    )

    store = JsonlRankStore(results_path, options=options)
    for search in config.searches:
        store.add_search(search)
    for target in config.targets:
        store.add_target(target)
    for proxy in config.proxies:
        store.add_proxy(proxy)

    now = datetime.now()
    run = store.add_run(Run(id=1, day=now.date(), started=now))

    metrics = MetricsCollector()
    controller = RunController(
        store=store,
        run=run,
        executor_factory=ExecutorFactory(metrics=metrics),
        captcha_gate=build_captcha_gate(config.captcha),
        metrics=metrics,
    )
    signal.signal(signal.SIGTERM, lambda *_: controller.cancel())

    try:
        status = controller.execute()
    finally:
        store.close()

    for summary in store.list_summaries(run.id):
        print(
            f"target={summary.target_id} group={summary.group_id} score_bp={summary.score_bp} "
            f"previous_bp={summary.previous_score_bp} top3={summary.total_top3} "
            f"top10={summary.total_top10} top100={summary.total_top100} out={summary.total_out}"
        )
    print(f"\nDONE: status={status.value} progress={run.progress} errors={run.errors} captchas={run.captchas}")
    return status


def main() -> None:
    parser = argparse.ArgumentParser(description="Check search ranks of tracked targets")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the JSON run config")
    parser.add_argument("--results", default=DEFAULT_RESULTS_PATH, help="Output JSONL file path")

    parser.add_argument("--max-threads", type=int, default=None, help="Max worker threads (clamped to proxy count)")
    parser.add_argument("--no-shuffle", action="store_true", help="Keep searches in config order")
    parser.add_argument("--user-agent", default=None, help="HTTP User-Agent header")
    parser.add_argument("--timeout-ms", type=int, default=None, help="HTTP timeout in milliseconds")
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()
    setup_logging(args.log_level)

    status = run_check(
        config_path=args.config,
        results_path=args.results,
        max_threads=args.max_threads,
        shuffle=not args.no_shuffle,
        user_agent=args.user_agent,
        timeout_ms=args.timeout_ms,
    )
    sys.exit(0 if status is RunStatus.DONE_SUCCESS else 1)


if __name__ == "__main__":
    main()
