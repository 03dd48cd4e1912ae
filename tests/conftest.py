import io
import threading
import time
from datetime import datetime, timedelta

import pytest

from multi_bario import Bar, ElementRegistry, State


@pytest.fixture
def registry():
    return ElementRegistry(use_color=False)


@pytest.fixture
def sink():
    return io.StringIO()


@pytest.fixture
def make_state(registry):
    def make(total=100, current=0, width=40, finished=False, elapsed=0.0, render_id=1, bar=None):
        now = datetime.now()
        return State(bar=bar if bar is not None else Bar(total, registry=registry),
                     id=render_id,
                     total=total,
                     current=current,
                     width=width,
                     finished=finished,
                     time=now,
                     start_time=now - timedelta(seconds=elapsed))
    return make


class OverlapTracker:
    """Element recording how many calls run at the same time"""

    def __init__(self):
        self._guard = threading.Lock()
        self.active = 0
        self.peak = 0

    def __call__(self, state, *args):
        with self._guard:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.001)
        with self._guard:
            self.active -= 1
        return 'x'


@pytest.fixture
def tracker(registry):
    tracker = OverlapTracker()
    registry.register('track', tracker)
    registry.register_adaptive('fill', tracker)
    return tracker
