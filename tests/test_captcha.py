"""Tests for the captcha gate variants and their scoped lifecycle."""

import unittest
from unittest.mock import MagicMock, patch

import requests

from serprank.captcha import (
    CaptchaChallenge,
    CaptchaGate,
    HttpCaptchaGate,
    NoCaptchaGate,
    captcha_scope,
)


class RecordingGate(CaptchaGate):
    def __init__(self, init_result=True, init_error=None):
        super().__init__()
        self.init_result = init_result
        self.init_error = init_error
        self.released = 0

    def init(self):
        if self.init_error:
            raise self.init_error
        return self.init_result

    def solve(self, challenge):
        return "token"

    def _release(self):
        self.released += 1


class TestCaptchaScope(unittest.TestCase):
    """Verify degradation to the absent gate and guaranteed release."""

    def test_no_gate_configured_yields_absent_variant(self):
        """No gate should yield the absent variant."""
        with captcha_scope(None) as gate:
            self.assertIsInstance(gate, NoCaptchaGate)
            self.assertFalse(gate.present)
            self.assertIsNone(gate.solve(CaptchaChallenge(page_url="u")))

    def test_ready_gate_is_used_and_closed(self):
        """A gate whose init succeeds should be used and then closed."""
        backend = RecordingGate()
        with captcha_scope(backend) as gate:
            self.assertIs(gate, backend)
            self.assertTrue(gate.present)
        self.assertEqual(backend.released, 1)

    def test_init_failure_degrades_and_still_closes(self):
        """A failed init should degrade to the absent variant and still close."""
        backend = RecordingGate(init_result=False)
        with captcha_scope(backend) as gate:
            self.assertIsInstance(gate, NoCaptchaGate)
        self.assertEqual(backend.released, 1)

    def test_init_crash_degrades(self):
        """An exception from init should degrade to the absent variant."""
        backend = RecordingGate(init_error=RuntimeError("boom"))
        with captcha_scope(backend) as gate:
            self.assertFalse(gate.present)
        self.assertTrue(backend.closed)

    def test_closed_on_exception(self):
        """The gate should be closed when the scope body raises."""
        backend = RecordingGate()
        with self.assertRaises(KeyError):
            with captcha_scope(backend):
                raise KeyError("run crashed")
        self.assertEqual(backend.released, 1)

    def test_close_is_idempotent(self):
        """Closing twice should release resources once."""
        backend = RecordingGate()
        backend.close()
        backend.close()
        self.assertEqual(backend.released, 1)


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class TestHttpCaptchaGate(unittest.TestCase):
    """Verify the 2captcha-style HTTP client against a mocked session."""

    def _gate(self, session):
        with patch("serprank.captcha.requests.Session", return_value=session):
            return HttpCaptchaGate(api_key="k", poll_interval_secs=0, max_wait_secs=5)

    def test_init_checks_balance(self):
        """init should succeed when the balance request is accepted."""
        session = MagicMock()
        session.get.return_value = _response({"status": 1, "request": "3.50"})
        gate = self._gate(session)
        self.assertTrue(gate.init())
        params = session.get.call_args.kwargs["params"]
        self.assertEqual(params["action"], "getbalance")
        self.assertEqual(params["key"], "k")

    def test_init_fails_on_bad_key(self):
        """init should fail when the service refuses the key."""
        session = MagicMock()
        session.get.return_value = _response({"status": 0, "request": "ERROR_WRONG_USER_KEY"})
        self.assertFalse(self._gate(session).init())

    def test_init_fails_when_unreachable(self):
        """init should fail when the service cannot be reached."""
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("down")
        self.assertFalse(self._gate(session).init())

    def test_solve_recaptcha_polls_until_ready(self):
        """solve should poll until the answer is ready."""
        session = MagicMock()
        session.post.return_value = _response({"status": 1, "request": "42"})
        session.get.side_effect = [
            _response({"status": 0, "request": "CAPCHA_NOT_READY"}),
            _response({"status": 1, "request": "answer-token"}),
        ]
        gate = self._gate(session)
        token = gate.solve(CaptchaChallenge(page_url="https://engine/sorry", site_key="sk", data_s="ds"))
        self.assertEqual(token, "answer-token")
        data = session.post.call_args.kwargs["data"]
        self.assertEqual(data["method"], "userrecaptcha")
        self.assertEqual(data["googlekey"], "sk")
        self.assertEqual(data["data-s"], "ds")

    def test_solve_gives_up_on_error(self):
        """solve should return None on a service error."""
        session = MagicMock()
        session.post.return_value = _response({"status": 1, "request": "42"})
        session.get.return_value = _response({"status": 0, "request": "ERROR_CAPTCHA_UNSOLVABLE"})
        gate = self._gate(session)
        self.assertIsNone(gate.solve(CaptchaChallenge(page_url="u", site_key="sk")))

    def test_solve_without_payload_returns_none(self):
        """A challenge without site key or image should not be submitted."""
        session = MagicMock()
        gate = self._gate(session)
        self.assertIsNone(gate.solve(CaptchaChallenge(page_url="u")))
        session.post.assert_not_called()

    def test_close_releases_session(self):
        """close should close the HTTP session."""
        session = MagicMock()
        gate = self._gate(session)
        gate.close()
        gate.close()
        session.close.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
