from __future__ import annotations

import json as _json
import re
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote_plus

from curl_cffi import requests as curl_requests

from .base import CaptchaFailure, ProxyFailure, SerpExecutor
from .captcha import CaptchaChallenge, CaptchaGate
from .config import DEFAULT_SEARCH_URL_TEMPLATE, HttpSettings
from .models import ProxyEntry, Search

_SITE_KEY_RE = re.compile(r'data-sitekey="([^"]+)"')
_DATA_S_RE = re.compile(r'data-s="([^"]+)"')
_PROXY_ERROR_HINTS = ("proxy", "tunnel")

ResultParser = Callable[[str], List[str]]


class HttpStatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP_{status_code}")
        self.status_code = status_code


class HttpSerpExecutor(SerpExecutor):
    """Fetches a result page through curl_cffi with a browser TLS fingerprint.

    Page parsing is delegated to result_parser so engines can be swapped
    without touching proxy and captcha handling."""

    def __init__(
        self,
        search_url_template: str = DEFAULT_SEARCH_URL_TEMPLATE,
        result_parser: Optional[ResultParser] = None,
        impersonate: str = "chrome120",
        *args,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._template = search_url_template
        self._parser = result_parser or parse_json_results
        self._impersonate = impersonate

    def build_url(self, search: Search) -> str:
        params: Dict[str, str] = {"query": quote_plus(search.keyword)}
        url = self._template.format(**params)
        if search.country:
            url += f"&gl={quote_plus(search.country)}"
        if search.device:
            url += f"&device={quote_plus(search.device)}"
        return url

    def fetch(
        self,
        search: Search,
        proxy: ProxyEntry,
        captcha_gate: CaptchaGate,
        http: HttpSettings,
    ) -> Any:
        url = self.build_url(search)
        headers = {
            "User-Agent": http.user_agent,
            "Accept-Language": "en-US,en;q=0.9",
        }
        session = curl_requests.Session()
        try:
            response = self._get(session, url, headers, proxy, http)
            if is_captcha_page(response):
                response = self._solve_and_retry(session, url, headers, proxy, http, captcha_gate, response)
            status_code = getattr(response, "status_code", None)
            if status_code == 407:
                raise ProxyFailure("proxy authentication required")
            if status_code is None or not 200 <= int(status_code) < 300:
                raise HttpStatusError(status_code or 0)
            return response
        finally:
            session.close()

    def parse(self, response: Any) -> List[str]:
        return self._parser(getattr(response, "text", ""))

    def _solve_and_retry(self, session, url, headers, proxy, http, captcha_gate, response) -> Any:
        if not captcha_gate.present:
            raise CaptchaFailure("captcha served and no solver configured")
        self.check_interrupted()
        self.count_captcha()
        token = captcha_gate.solve(extract_challenge(response, url))
        if not token:
            raise CaptchaFailure(f"captcha not solved by {captcha_gate.friendly_name}")
        self.check_interrupted()
        retried = self._get(session, url, headers, proxy, http, params={"g-recaptcha-response": token})
        if is_captcha_page(retried):
            raise CaptchaFailure("captcha answer rejected")
        return retried

    def _get(self, session, url, headers, proxy, http, params=None) -> Any:
        try:
            return session.get(
                url,
                params=params,
                headers=headers,
                proxies=proxy.as_proxies(),
                timeout=http.timeout_secs,
                impersonate=self._impersonate,
            )
        except Exception as exc:  # noqa: BLE001
            message = str(exc).lower()
            if not proxy.is_direct and any(hint in message for hint in _PROXY_ERROR_HINTS):
                raise ProxyFailure(str(exc)) from exc
            raise


def is_captcha_page(response: Any) -> bool:
    if getattr(response, "status_code", None) == 429:
        return True
    if "/sorry/" in (getattr(response, "url", "") or ""):
        return True
    text = getattr(response, "text", "") or ""
    return "g-recaptcha" in text or "captcha-form" in text


def extract_challenge(response: Any, page_url: str) -> CaptchaChallenge:
    text = getattr(response, "text", "") or ""
    site_key = _SITE_KEY_RE.search(text)
    data_s = _DATA_S_RE.search(text)
    return CaptchaChallenge(
        page_url=getattr(response, "url", None) or page_url,
        site_key=site_key.group(1) if site_key else None,
        data_s=data_s.group(1) if data_s else None,
    )


def parse_json_results(text: str) -> List[str]:
    """Extract result URLs from a {"results": [{"url": ...}, ...]} payload, in order."""
    payload = _json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError("result payload is not an object")
    results = payload.get("results")
    if not isinstance(results, list):
        raise ValueError("result payload has no results list")
    urls: List[str] = []
    for item in results:
        url = item.get("url") if isinstance(item, dict) else None
        if url:
            urls.append(url)
    return urls
