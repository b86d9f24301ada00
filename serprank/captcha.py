from __future__ import annotations

import base64
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptchaChallenge:
    """What the executor saw on a captcha page.

    Either site_key (reCAPTCHA widget) or image (raw picture bytes) is set."""

    page_url: str
    site_key: Optional[str] = None
    data_s: Optional[str] = None
    image: Optional[bytes] = None


class CaptchaGate(ABC):
    """Pluggable captcha-solving capability, scoped to one run."""

    present = True

    def __init__(self) -> None:
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def friendly_name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    def init(self) -> bool:
        """Prepare the backend. False means the gate must not be used."""

    @abstractmethod
    def solve(self, challenge: CaptchaChallenge) -> Optional[str]:
        """Return the answer token, or None when the backend gave up."""

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._release()

    @property
    def closed(self) -> bool:
        return self._closed

    def _release(self) -> None:
        """Free backend resources. Called at most once."""


class NoCaptchaGate(CaptchaGate):
    """The absent variant: no solver configured or the solver failed to start."""

    present = False

    def init(self) -> bool:
        return True

    def solve(self, challenge: CaptchaChallenge) -> Optional[str]:
        return None


class HttpCaptchaGate(CaptchaGate):
    """Client for 2captcha-compatible solving services (in.php / res.php)."""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://2captcha.com",
        timeout: int = 20,
        poll_interval_secs: float = 5.0,
        max_wait_secs: float = 180.0,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._poll_interval = poll_interval_secs
        self._max_wait = max_wait_secs
        self._session = requests.Session()

    @property
    def friendly_name(self) -> str:
        return self._api_url

    def init(self) -> bool:
        try:
            payload = self._get("res.php", action="getbalance")
        except (requests.RequestException, ValueError) as exc:
            logger.warning("captcha service %s unreachable: %s", self.friendly_name, exc)
            return False
        if payload.get("status") != 1:
            logger.warning("captcha service %s refused key: %s", self.friendly_name, payload.get("request"))
            return False
        logger.info("captcha service %s ready, balance=%s", self.friendly_name, payload.get("request"))
        return True

    def solve(self, challenge: CaptchaChallenge) -> Optional[str]:
        if challenge.site_key:
            data = {
                "method": "userrecaptcha",
                "googlekey": challenge.site_key,
                "pageurl": challenge.page_url,
            }
            if challenge.data_s:
                data["data-s"] = challenge.data_s
        elif challenge.image:
            data = {"method": "base64", "body": base64.b64encode(challenge.image).decode("ascii")}
        else:
            logger.warning("captcha challenge on %s has nothing to solve", challenge.page_url)
            return None

        try:
            submitted = self._post("in.php", data)
            if submitted.get("status") != 1:
                logger.warning("captcha submit rejected: %s", submitted.get("request"))
                return None
            return self._wait_answer(submitted["request"])
        except (requests.RequestException, ValueError, KeyError) as exc:
            logger.warning("captcha solve failed on %s: %s", challenge.page_url, exc)
            return None

    def _wait_answer(self, captcha_id: str) -> Optional[str]:
        deadline = time.time() + self._max_wait
        while time.time() < deadline:
            time.sleep(self._poll_interval)
            payload = self._get("res.php", action="get", id=captcha_id)
            if payload.get("status") == 1:
                return payload["request"]
            if payload.get("request") != "CAPCHA_NOT_READY":
                logger.warning("captcha %s failed: %s", captcha_id, payload.get("request"))
                return None
        logger.warning("captcha %s not solved after %.0fs", captcha_id, self._max_wait)
        return None

    def _get(self, path: str, **params) -> dict:
        params.update(key=self._api_key, json=1)
        resp = self._session.get(f"{self._api_url}/{path}", params=params, timeout=self._timeout)
        resp.raise_for_status()
        return resp.json()

    def _post(self, path: str, data: dict) -> dict:
        data = dict(data, key=self._api_key, json=1)
        resp = self._session.post(f"{self._api_url}/{path}", data=data, timeout=self._timeout)
        resp.raise_for_status()
        return resp.json()

    def _release(self) -> None:
        self._session.close()


@contextmanager
def captcha_scope(gate: Optional[CaptchaGate]) -> Iterator[CaptchaGate]:
    """Initialize gate for the duration of a run and always close it.

    A missing gate or one whose init() fails is replaced by NoCaptchaGate."""
    if gate is None:
        logger.info("no captcha service configured")
        active: CaptchaGate = NoCaptchaGate()
    else:
        try:
            ready = gate.init()
        except Exception:  # noqa: BLE001
            logger.exception("captcha solver %s crashed during init", gate.friendly_name)
            ready = False
        if ready:
            active = gate
        else:
            logger.info("failed to init captcha solver %s", gate.friendly_name)
            active = NoCaptchaGate()
    try:
        yield active
    finally:
        if gate is not None:
            gate.close()
        if active is not gate:
            active.close()
