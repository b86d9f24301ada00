"""Tests for the RequestPacer class."""

import time
import unittest

from serprank.models import ProxyEntry
from serprank.pacer import RequestPacer

P1 = ProxyEntry(id=1, host="10.0.0.1", port=3128)
P2 = ProxyEntry(id=2, host="10.0.0.2", port=3128)


class TestRequestPacer(unittest.TestCase):
    """Verify per-route pauses."""

    def test_disabled_never_sleeps(self):
        """A pacer without pause should never sleep."""
        pacer = RequestPacer()
        self.assertFalse(pacer.enabled)
        self.assertEqual(pacer.wait(P1), 0.0)
        self.assertEqual(pacer.wait(P1), 0.0)

    def test_first_request_is_immediate(self):
        """The first request on a route should not wait."""
        pacer = RequestPacer(0.2, 0.2)
        self.assertEqual(pacer.wait(P1), 0.0)

    def test_second_request_on_same_route_waits(self):
        """Two requests on one route should be at least min_secs apart."""
        pacer = RequestPacer(0.1, 0.1)
        pacer.wait(P1)
        start = time.monotonic()
        slept = pacer.wait(P1)
        self.assertGreater(slept, 0.0)
        self.assertGreaterEqual(time.monotonic() - start, 0.08)

    def test_routes_are_independent(self):
        """Different routes should not wait for each other."""
        pacer = RequestPacer(0.5, 0.5)
        pacer.wait(P1)
        self.assertEqual(pacer.wait(P2), 0.0)

    def test_max_is_clamped_to_min(self):
        """max_secs below min_secs should be raised to it."""
        pacer = RequestPacer(0.2, 0.0)
        self.assertTrue(pacer.enabled)


if __name__ == "__main__":
    unittest.main()
