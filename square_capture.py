# -*- coding: utf-8 -*-

"""
Live square capture -> 28x28 rectified sample + feature vectors.
 - Producer thread keeps only the newest camera frame (lossy on purpose).
 - Consumer finds the first square-ish quad, orders its corners and warps it.
 - Rectified image is flattened to [0,1] and to (1-v, v) pairs for a classifier.
 - Overlay shows a 1 Hz counter; ESC quits.
"""
import argparse
import sys
import threading
import time
from collections import namedtuple

import cv2
import numpy as np
import serial

# =============================================================================
# 1. Configuration
# =============================================================================

class Config:
    # --- Camera settings ---
    CAMERA_ID = 0
    FRAME_WIDTH = 640
    FRAME_HEIGHT = 480
    FRAME_FPS = 30
    FOURCC = 'MJPG'
    OPEN_RETRIES = 3
    OPEN_WAIT_S = 1.0

    # square detection
    BLUR_KSIZE = 5
    CANNY_TH1 = 50
    CANNY_TH2 = 150
    MIN_CONTOUR_AREA = 1000
    APPROX_EPS = 0.02
    MIN_ASPECT = 0.8
    MAX_ASPECT = 1.2

    # rectified sample
    OUT_SIZE = 28
    PREVIEW_SCALE = 10

    # loop timing
    IDLE_WAIT_S = 0.010
    COUNTER_PERIOD_S = 1.0
    TARGET_HZ = 0           # 0 = unpaced, 10 -> 100 ms frame period
    JOIN_TIMEOUT_S = 2.0

    # display
    WINDOW_MAIN = "Square Capture"
    WINDOW_RECT = "Rectified"
    EXIT_KEY = 27
    KEY_WAIT_MS = 1
    COUNTER_POS = (10, 30)

    # serial
    SERIAL_PORT = None      # e.g. '/dev/ttyAMA0'
    BAUD_RATE = 9600
    SEND_INTERVAL = 0.050

# =============================================================================
# 2. Camera helpers
# =============================================================================

def open_camera(idx, width, height, fps=Config.FRAME_FPS, fourcc=Config.FOURCC,
                retries=Config.OPEN_RETRIES, wait_s=Config.OPEN_WAIT_S):
    """ Open capture device and request settings. Returns None if it never opens. """
    for i in range(retries):
        cap = cv2.VideoCapture(idx)
        if cap.isOpened():
            if fourcc:
                cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*fourcc))
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            cap.set(cv2.CAP_PROP_FPS, fps)
            return cap
        cap.release()
        if i < retries - 1:
            time.sleep(wait_s)
    return None


def fourcc_to_str(code):
    code = int(code)
    if code <= 0:
        return ''
    return ''.join(chr((code >> (8 * i)) & 0xFF) for i in range(4))


class CameraReport:
    """ What we asked the device for vs. what it reports back. """

    TOLERANCE = {'width': 0, 'height': 0, 'fps': 0.5}

    def __init__(self, requested, actual):
        self.requested = dict(requested)
        self.actual = dict(actual)

    def mismatches(self):
        out = []
        for key, want in self.requested.items():
            got = self.actual.get(key)
            if want is None or want == '':
                continue
            if key == 'fourcc':
                if got != want:
                    out.append((key, want, got))
            elif got is None or abs(float(got) - float(want)) > self.TOLERANCE.get(key, 0):
                out.append((key, want, got))
        return out


def read_camera_settings(cap, requested):
    actual = {
        'width': int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
        'height': int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        'fps': float(cap.get(cv2.CAP_PROP_FPS)),
        'fourcc': fourcc_to_str(cap.get(cv2.CAP_PROP_FOURCC)),
    }
    return CameraReport(requested, actual)

# =============================================================================
# 3. Shared frame buffer + capture thread
# =============================================================================

class FrameBuffer:
    """ Single-slot mailbox. publish() overwrites, take_latest() copies. """

    def __init__(self):
        self._lock = threading.Lock()
        self._frame = None
        self.publish_count = 0

    def publish(self, frame):
        with self._lock:
            self._frame = frame
            self.publish_count += 1

    def take_latest(self):
        with self._lock:
            if self._frame is None:
                return None
            return self._frame.copy()


def is_empty_frame(frame):
    return frame is None or frame.size == 0


class FrameGrabber:
    """
    Producer: reads the camera as fast as it delivers and publishes every
    non-empty frame. Unconsumed frames are simply overwritten.
    """

    def __init__(self, cap, buffer):
        self.cap = cap
        self.buffer = buffer
        self.stop_event = threading.Event()
        self.reads = 0
        self.empty_reads = 0
        self._thread = None

    def start(self):
        self._thread = threading.Thread(target=self._run, name="frame-grabber", daemon=True)
        self._thread.start()
        return self

    def _run(self):
        while not self.stop_event.is_set():
            ok, frame = self.cap.read()
            self.reads += 1
            if not ok or is_empty_frame(frame):
                self.empty_reads += 1
                continue
            self.buffer.publish(frame)

    def is_alive(self):
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout=None):
        """ Signal stop and wait for the in-flight read to finish. True if joined. """
        if timeout is None:
            timeout = Config.JOIN_TIMEOUT_S
        self.stop_event.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            print(f"[CAPTURE] grabber still blocked in read after {timeout:.1f}s")
            return False
        return True

# =============================================================================
# 4. Square detection
# =============================================================================

SquareDetection = namedtuple("SquareDetection", "contour corners matrix warped")

DST_SQUARE = np.float32([[0, 0],
                         [Config.OUT_SIZE - 1, 0],
                         [Config.OUT_SIZE - 1, Config.OUT_SIZE - 1],
                         [0, Config.OUT_SIZE - 1]])


def to_gray(frame):
    if is_empty_frame(frame):
        return None
    if frame.ndim == 2:
        return frame
    if frame.shape[2] == 1:
        return frame[:, :, 0]
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


def edge_map(gray):
    k = Config.BLUR_KSIZE
    blurred = cv2.GaussianBlur(gray, (k, k), 0)
    return cv2.Canny(blurred, Config.CANNY_TH1, Config.CANNY_TH2)


def find_contours(edges):
    cnts_res = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    cnts = cnts_res[-2] if len(cnts_res) >= 2 else []
    if cnts is None:
        cnts = []
    return list(cnts)


def square_candidate(contour):
    """
    Area >= MIN_CONTOUR_AREA, 4 vertices after approxPolyDP (2% of perimeter),
    convex, bounding box w/h in [MIN_ASPECT, MAX_ASPECT].
    Returns (4,2) float32 points or None.
    """
    if abs(cv2.contourArea(contour)) < Config.MIN_CONTOUR_AREA:
        return None
    peri = cv2.arcLength(contour, True)
    approx = cv2.approxPolyDP(contour, Config.APPROX_EPS * peri, True)
    if len(approx) != 4:
        return None
    if not cv2.isContourConvex(approx):
        return None
    _, _, w, h = cv2.boundingRect(approx)
    if h == 0:
        return None
    aspect = w / float(h)
    if aspect < Config.MIN_ASPECT or aspect > Config.MAX_ASPECT:
        return None
    return approx.reshape(4, 2).astype(np.float32)


def select_first_match(contours):
    """ First acceptable contour in discovery order; the rest are not looked at. """
    for c in contours:
        pts = square_candidate(c)
        if pts is not None:
            return c, pts
    return None, None


def select_largest_area(contours):
    best = (None, None)
    best_area = -1.0
    for c in contours:
        pts = square_candidate(c)
        if pts is None:
            continue
        area = abs(cv2.contourArea(pts))
        if area > best_area:
            best, best_area = (c, pts), area
    return best


SELECTION_STRATEGIES = {
    'first': select_first_match,
    'largest': select_largest_area,
}


def order_points(pts):
    """
    Order 4 points: top-left, top-right, bottom-right, bottom-left.
    min(x+y)=TL, max(x+y)=BR, min(y-x)=TR, max(y-x)=BL.
    Near 45 deg rotation two corners tie on sum/diff and labels can collide.
    """
    pts = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    rect = np.zeros((4, 2), dtype="float32")
    s = pts.sum(axis=1)
    rect[0] = pts[np.argmin(s)]
    rect[2] = pts[np.argmax(s)]
    diff = np.diff(pts, axis=1).reshape(-1)
    rect[1] = pts[np.argmin(diff)]
    rect[3] = pts[np.argmax(diff)]
    return rect


def rectify(gray, corners):
    mtx = cv2.getPerspectiveTransform(corners.astype(np.float32), DST_SQUARE)
    warped = cv2.warpPerspective(gray, mtx, (Config.OUT_SIZE, Config.OUT_SIZE))
    return mtx, warped


def detect_square(frame, strategy=select_first_match):
    """ Full detection pass. None means no square in this frame. """
    gray = to_gray(frame)
    if gray is None:
        return None
    cnts = find_contours(edge_map(gray))
    contour, pts = strategy(cnts)
    if pts is None:
        return None
    corners = order_points(pts)
    mtx, warped = rectify(gray, corners)
    return SquareDetection(contour, corners, mtx, warped)

# =============================================================================
# 5. Encoding
# =============================================================================

def encode_square(warped):
    """
    normalized: OUT_SIZE*OUT_SIZE values pixel/255, row-major.
    complementary: (1-v, v) per pixel.
    """
    if warped is None:
        return None, None
    normalized = warped.astype(np.float32).reshape(-1) / 255.0
    complementary = np.stack([1.0 - normalized, normalized], axis=1).reshape(-1)
    return normalized, complementary

# =============================================================================
# 6. Pacing + FPS
# =============================================================================

class PacingController:
    def __init__(self, target_hz=Config.TARGET_HZ, clock=time.monotonic, sleep=time.sleep):
        self.clock = clock
        self.sleep = sleep
        self.frame_period = 1.0 / target_hz if target_hz else None
        self.counter = 0
        self.last_tick = clock()
        self.cycle_start = self.last_tick

    def start_cycle(self):
        self.cycle_start = self.clock()
        return self.cycle_start

    def update_counter(self, now=None):
        # reference advances by whole periods so the count tracks elapsed seconds
        if now is None:
            now = self.clock()
        steps = int((now - self.last_tick) // Config.COUNTER_PERIOD_S)
        if steps > 0:
            self.counter += steps
            self.last_tick += steps * Config.COUNTER_PERIOD_S
        return self.counter

    def end_cycle(self):
        """ Sleep what is left of the frame period. Overruns are not made up. """
        if self.frame_period is None:
            return 0.0
        remaining = self.frame_period - (self.clock() - self.cycle_start)
        if remaining > 0:
            self.sleep(remaining)
            return remaining
        return 0.0

    def idle(self):
        self.sleep(Config.IDLE_WAIT_S)


class FPSCounter:
    def __init__(self, smoothing=0.9, clock=time.monotonic):
        self.smoothing = float(smoothing)
        self.clock = clock
        self.last_time = None
        self.fps = 0.0

    def update(self):
        now = self.clock()
        if self.last_time is None:
            self.last_time = now
            return 0.0
        dt = now - self.last_time
        self.last_time = now
        if dt <= 0:
            return self.fps
        inst = 1.0 / dt
        if self.fps == 0.0:
            self.fps = inst
        else:
            alpha = 1.0 - self.smoothing
            self.fps = self.smoothing * self.fps + alpha * inst
        return self.fps

# =============================================================================
# 7. Display manager (drawing helpers + window I/O)
# =============================================================================

class DisplayManager:
    def __init__(self):
        self.COLOR_RED = (0, 0, 255)
        self.COLOR_GREEN = (0, 255, 0)
        self.COLOR_BLUE = (255, 0, 0)
        self.COLOR_CYAN = (255, 255, 0)
        self.COLOR_YELLOW = (0, 255, 255)
        self.FONT = cv2.FONT_HERSHEY_SIMPLEX
        self.CORNER_LABELS = ("TL", "TR", "BR", "BL")

    def draw_counter(self, img, counter, fps=None):
        cv2.putText(img, f"#{counter}", Config.COUNTER_POS, self.FONT, 0.7, self.COLOR_GREEN, 2)
        if fps is not None:
            fps_text = f"FPS:{fps:.1f}"
            (text_w, _), _ = cv2.getTextSize(fps_text, self.FONT, 0.7, 2)
            cv2.putText(img, fps_text, (img.shape[1] - text_w - 10, 30), self.FONT, 0.7, self.COLOR_CYAN, 2)

    def draw_square(self, img, detection):
        if detection is None:
            cv2.putText(img, "NO SQUARE", (10, 60), self.FONT, 0.7, self.COLOR_RED, 2)
            return
        cv2.drawContours(img, [detection.corners.reshape(4, 1, 2).astype(np.int32)], -1, self.COLOR_BLUE, 2)
        for lbl, (x, y) in zip(self.CORNER_LABELS, detection.corners):
            pt = (int(x), int(y))
            cv2.circle(img, pt, 5, self.COLOR_YELLOW, -1)
            cv2.putText(img, lbl, (pt[0] - 10, pt[1] - 10), self.FONT, 0.6, self.COLOR_GREEN, 2)

    def preview(self, warped):
        scale = Config.PREVIEW_SCALE
        return cv2.resize(warped, None, fx=scale, fy=scale, interpolation=cv2.INTER_NEAREST)

    def show(self, window, frame):
        cv2.imshow(window, frame)

    def poll_key(self, timeout_ms=Config.KEY_WAIT_MS):
        key = cv2.waitKey(timeout_ms)
        if key < 0:
            return None
        return key & 0xFF

    def close(self):
        cv2.destroyAllWindows()

# =============================================================================
# 8. Serial manager (forward detections to MCU)
# =============================================================================

def build_packet(detection):
    """ '{flag}{cx:03d}{cy:03d}{side:03d}A', all zeros when nothing detected """
    if detection is None:
        return "0000000000A"
    corners = detection.corners
    cx, cy = corners.mean(axis=0)
    sides = [np.linalg.norm(corners[(i + 1) % 4] - corners[i]) for i in range(4)]
    side = float(np.mean(sides))
    vals = [min(999, max(0, int(round(v)))) for v in (cx, cy, side)]
    return f"1{vals[0]:03d}{vals[1]:03d}{vals[2]:03d}A"


class SerialManager:
    def __init__(self, port=Config.SERIAL_PORT, baud=Config.BAUD_RATE, ser=None,
                 send_interval=Config.SEND_INTERVAL):
        self.ser = ser
        self.send_interval = send_interval
        self.last_send_time = None
        self.sent = 0

        if self.ser is None and port:
            try:
                self.ser = serial.Serial(port, baud, timeout=1)
                time.sleep(2)
                print(f"[SERIAL] connected {port} @ {baud}")
            except (serial.SerialException, OSError) as e:
                print(f"[SERIAL] open failed: {e}")
                self.ser = None

    @property
    def available(self):
        return self.ser is not None and getattr(self.ser, "is_open", False)

    def update(self, detection, curr_time):
        if not self.available:
            return None
        if self.last_send_time is not None and curr_time - self.last_send_time < self.send_interval:
            return None
        send_str = build_packet(detection)
        try:
            self.ser.write(send_str.encode('ascii'))
            self.sent += 1
        except (serial.SerialException, OSError) as e:
            print(f"[SERIAL] write failed: {e}")
            return None
        self.last_send_time = curr_time
        return send_str

    def close(self):
        if self.available:
            self.ser.close()

# =============================================================================
# 9. Main loop
# =============================================================================

CycleResult = namedtuple("CycleResult", "detection normalized complementary counter annotated")


class SquareCaptureApp:
    def __init__(self, display, pacing=None, strategy=select_first_match, serial_mgr=None):
        self.display = display
        self.pacing = pacing if pacing is not None else PacingController()
        self.strategy = strategy
        self.serial_mgr = serial_mgr
        self.fps_counter = FPSCounter(smoothing=0.9, clock=self.pacing.clock)
        self.cycles = 0
        self.detections = 0

    def process(self, frame):
        """ One cycle on one frame: detect, encode, counter, overlay. """
        detection = detect_square(frame, self.strategy)
        normalized, complementary = encode_square(detection.warped if detection is not None else None)
        counter = self.pacing.update_counter()

        annotated = frame.copy() if frame.ndim == 3 else cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
        self.display.draw_square(annotated, detection)
        self.display.draw_counter(annotated, counter, self.fps_counter.update())

        self.cycles += 1
        if detection is not None:
            self.detections += 1
        return CycleResult(detection, normalized, complementary, counter, annotated)

    def run(self, buffer, max_cycles=None):
        try:
            while max_cycles is None or self.cycles < max_cycles:
                self.pacing.start_cycle()
                frame = buffer.take_latest()
                if frame is None:
                    if self.display.poll_key(Config.KEY_WAIT_MS) == Config.EXIT_KEY:
                        break
                    self.pacing.idle()
                    continue

                result = self.process(frame)
                self.display.show(Config.WINDOW_MAIN, result.annotated)
                if result.detection is not None:
                    self.display.show(Config.WINDOW_RECT, self.display.preview(result.detection.warped))
                if self.serial_mgr is not None:
                    self.serial_mgr.update(result.detection, self.pacing.clock())

                if self.display.poll_key(Config.KEY_WAIT_MS) == Config.EXIT_KEY:
                    break
                self.pacing.end_cycle()
        except KeyboardInterrupt:
            print("[MAIN] interrupted")
        return 0


def run_capture(cap, display, pacing=None, strategy=select_first_match, serial_mgr=None,
                max_cycles=None):
    """ Start grabber, run consumer, then stop/join grabber before releasing the camera. """
    buffer = FrameBuffer()
    grabber = FrameGrabber(cap, buffer).start()
    app = SquareCaptureApp(display, pacing=pacing, strategy=strategy, serial_mgr=serial_mgr)
    try:
        code = app.run(buffer, max_cycles=max_cycles)
    finally:
        if grabber.stop():
            cap.release()
        else:
            print("[CAPTURE] camera not released: read still in flight")
        display.close()
        if serial_mgr is not None:
            serial_mgr.close()
        print(f"[CAPTURE] reads={grabber.reads} empty={grabber.empty_reads} "
              f"published={buffer.publish_count}")
        print(f"[MAIN] cycles={app.cycles} detections={app.detections}")
    return code


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Detect and rectify a square target from a live camera.")
    parser.add_argument("--camera", type=int, default=Config.CAMERA_ID, help="capture device index")
    parser.add_argument("--width", type=int, default=Config.FRAME_WIDTH)
    parser.add_argument("--height", type=int, default=Config.FRAME_HEIGHT)
    parser.add_argument("--fps", type=int, default=Config.FRAME_FPS, help="requested camera fps")
    parser.add_argument("--hz", type=float, default=Config.TARGET_HZ,
                        help="pace processing loop to this rate (0 = as fast as possible)")
    parser.add_argument("--strategy", choices=sorted(SELECTION_STRATEGIES), default='first',
                        help="which qualifying quad to keep")
    parser.add_argument("--serial", default=Config.SERIAL_PORT, help="serial port for result packets")
    parser.add_argument("--baud", type=int, default=Config.BAUD_RATE)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    cap = open_camera(args.camera, args.width, args.height, fps=args.fps)
    if cap is None:
        print(f"[CAMERA] ERROR: could not open camera {args.camera}")
        return 1

    requested = {'width': args.width, 'height': args.height, 'fps': args.fps, 'fourcc': Config.FOURCC}
    report = read_camera_settings(cap, requested)
    print(f"[CAMERA] opened {args.camera}: {report.actual}")
    for key, want, got in report.mismatches():
        print(f"[CAMERA] {key}: requested {want}, device reports {got}")

    serial_mgr = SerialManager(args.serial, args.baud) if args.serial else None
    pacing = PacingController(target_hz=args.hz)
    return run_capture(cap, DisplayManager(), pacing=pacing,
                       strategy=SELECTION_STRATEGIES[args.strategy], serial_mgr=serial_mgr)


if __name__ == "__main__":
    sys.exit(main())
