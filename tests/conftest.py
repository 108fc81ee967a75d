import threading
import time

import numpy as np
import pytest

import square_capture as sc


class FakeClock:
    def __init__(self, start=0.0):
        self.t = start
        self.slept = []

    def __call__(self):
        return self.t

    def advance(self, dt):
        self.t += dt

    def sleep(self, dt):
        self.slept.append(dt)
        self.t += dt


class FakeCamera:
    """ Cycles through a list of frames; None entries read as empty. """

    def __init__(self, frames, delay=0.001):
        self.frames = frames
        self.delay = delay
        self.i = 0
        self.released = 0
        self.reads_after_release = 0

    def read(self):
        if self.released:
            self.reads_after_release += 1
        time.sleep(self.delay)
        frame = self.frames[self.i % len(self.frames)]
        self.i += 1
        if frame is None:
            return False, None
        return True, frame.copy()

    def release(self):
        self.released += 1


class BlockingCamera:
    def __init__(self, frame):
        self.frame = frame
        self.gate = threading.Event()
        self.entered = threading.Event()

    def read(self):
        self.entered.set()
        self.gate.wait()
        return True, self.frame.copy()

    def release(self):
        pass


class StallingCamera:
    """ One good frame, then every read blocks until the gate opens. """

    def __init__(self, frame):
        self.frame = frame
        self.gate = threading.Event()
        self.reads = 0
        self.in_read = False
        self.released = 0
        self.release_during_read = False

    def read(self):
        self.in_read = True
        self.reads += 1
        if self.reads > 1:
            self.gate.wait()
        self.in_read = False
        return True, self.frame.copy()

    def release(self):
        self.released += 1
        if self.in_read:
            self.release_during_read = True


class FakeDisplay(sc.DisplayManager):
    """ ESC after esc_after polls made once a frame was shown, or after esc_idle polls in total. """

    def __init__(self, esc_after=3, esc_idle=None):
        super().__init__()
        self.esc_after = esc_after
        self.esc_idle = esc_idle
        self.polls = 0
        self.frame_polls = 0
        self.shown = []
        self.closed = 0

    def show(self, window, frame):
        self.shown.append((window, frame.shape))

    def poll_key(self, timeout_ms=1):
        self.polls += 1
        if self.shown:
            self.frame_polls += 1
        if self.frame_polls >= self.esc_after:
            return sc.Config.EXIT_KEY
        if self.esc_idle is not None and self.polls >= self.esc_idle:
            return sc.Config.EXIT_KEY
        return None

    def close(self):
        self.closed += 1


def make_square_frame(side=200, size=(480, 640), fg=0, bg=255):
    h, w = size
    frame = np.full((h, w, 3), bg, dtype=np.uint8)
    y0 = (h - side) // 2
    x0 = (w - side) // 2
    frame[y0:y0 + side, x0:x0 + side] = fg
    return frame


def make_blank_frame(size=(480, 640)):
    return np.full((size[0], size[1], 3), 255, dtype=np.uint8)


def poly(points):
    return np.array(points, dtype=np.int32).reshape(-1, 1, 2)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def square_frame():
    return make_square_frame()


@pytest.fixture
def blank_frame():
    return make_blank_frame()
