import time
import queue
import logging

from tiltmonitor.tilt import TILTCOLORS, decode_frame, describe
from tiltmonitor.registry import DeviceRegistry, DEFAULT_TIMEOUT
from tiltmonitor.calibration import CalibrationStore
from tiltmonitor.reporter import LogSession, export_csv
from tiltmonitor.display import Display
from tiltmonitor.config import default_interval
from tiltmonitor.eventlog import event_log, beacon_log

"""
Tilt monitor

Owns the registry, calibrations and log sessions.  Every method here runs
on the scheduler (main) thread; the only thing shared with the scanner
thread is the frame queue.
"""

logger = logging.getLogger('tiltmonitor.monitor')

# poll the beacon queue every 50ms
BEACON_POLL_S = 0.05
# check for the last received signal every half second
LAST_HEARD_S = 0.5
DISPLAY_S = 1.0


class TiltMonitor:

  def __init__(self, config, frames, scheduler, http=None, clock=time.time):
    self._config = config
    self._frames = frames
    self._scheduler = scheduler
    self._clock = clock

    timeout = config['system'].getint('timeout', fallback=DEFAULT_TIMEOUT)
    self.registry = DeviceRegistry(timeout=timeout)
    self.calibration = CalibrationStore(config)
    self.display = Display(self.registry)
    self.sessions = {color: LogSession(color, config[color], http=http, clock=clock)
                     for color in TILTCOLORS[1:]}
    self._water_cal = set()
    self._timers = []

  def schedule(self):
    self._timers = [
      self._scheduler.repeat(BEACON_POLL_S, self.process_beacons),
      self._scheduler.repeat(LAST_HEARD_S, self.last_heard),
      self._scheduler.repeat(DISPLAY_S, self.display.update_display),
    ]

  def process_beacons(self):
    """Handle every frame currently queued by the scanner"""
    while True:
      try:
        frame = self._frames.get_nowait()
      except queue.Empty:
        break
      self.handle_frame(frame)

  def handle_frame(self, frame, now=None):
    sample = decode_frame(frame, self.calibration)
    if sample is None:
      return None

    color = sample.color
    now = self._clock() if now is None else now
    added = self.registry.record_sample(sample, now)
    self.sessions[color].add_sample(sample)
    if added:
      self.registry.set_log_state(color, self.sessions[color].active)
      self._tilt_added(color)

    if color in self._water_cal:
      self._water_cal.discard(color)
      self.calibration.set_gravity_calibration(color, sample.sg_raw)

    beacon_log(describe(sample))
    return sample

  def _tilt_added(self, color):
    if self._config[color].getboolean('autolog', fallback=False):
      self.start_log(color)

  def last_heard(self, now=None):
    for color in self.registry.check_liveness(now):
      # a Tilt that is gone can't be logged
      self.sessions[color].stop()

  #
  # Logging
  #

  def start_log(self, color, now=None):
    default_interval(self._config[color])
    state = self.registry.get(color)
    latest = state.last_sample if state is not None else None
    session = self.sessions[color]
    ok = session.start(self._scheduler, latest, now)
    self.registry.set_log_state(color, session.active)
    return ok

  def stop_log(self, color):
    session = self.sessions[color]
    session.stop()
    self.registry.set_log_state(color, session.active)

  def export(self, color, path):
    return export_csv(self.sessions[color].records, path)

  #
  # Calibration
  #

  def calibrate_water(self, color):
    """Zero the SG offset against the latest reading, or the next one"""
    state = self.registry.get(color)
    if state is None or state.last_sample is None:
      event_log(f"{color.upper()} Tilt: water SG calibration on next reading")
      self._water_cal.add(color)
      return None
    return self.calibration.set_gravity_calibration(color, state.last_sample.sg_raw)

  def set_offset(self, color, field, value):
    return self.calibration.set_manual_offset(color, field, value)

  def end(self):
    for timer in self._timers:
      timer.cancel()
    for session in self.sessions.values():
      session.stop()
