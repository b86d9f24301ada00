from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from .base import SerpExecutor
from .captcha import CaptchaGate, HttpCaptchaGate
from .config import RunOptions
from .metrics import MetricsCollector
from .pacer import RequestPacer
from .scrapers import HttpSerpExecutor, ResultParser


class ExecutorFactory:
    """Builds one SerpExecutor per worker thread.

    Executors count captchas for the query in flight, so they are never
    shared between workers. The metrics collector and pacer are."""

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        result_parser: Optional[ResultParser] = None,
        builder: Optional[Callable[..., SerpExecutor]] = None,
    ) -> None:
        self._metrics = metrics
        self._result_parser = result_parser
        self._builder = builder

    def create_executor(self, options: RunOptions, pacer: RequestPacer) -> SerpExecutor:
        if self._builder is not None:
            return self._builder(metrics=self._metrics, pacer=pacer)
        return HttpSerpExecutor(
            search_url_template=options.search_url_template,
            result_parser=self._result_parser,
            metrics=self._metrics,
            pacer=pacer,
        )


_CAPTCHA_SERVICES: Dict[str, str] = {
    "2captcha": "https://2captcha.com",
    "rucaptcha": "https://rucaptcha.com",
}


def build_captcha_gate(config: Optional[Dict[str, Any]]) -> Optional[CaptchaGate]:
    """Return the configured captcha gate, or None when no service is set up."""
    if not config:
        return None
    service = str(config.get("service", "")).lower()
    api_key = config.get("api_key")
    if not service or not api_key:
        return None
    api_url = config.get("api_url") or _CAPTCHA_SERVICES.get(service)
    if api_url is None:
        raise ValueError(f"Unknown captcha service: {service}")
    return HttpCaptchaGate(
        api_key=api_key,
        api_url=api_url,
        max_wait_secs=float(config.get("max_wait_secs", 180.0)),
    )
