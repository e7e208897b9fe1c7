import time
import logging
from dataclasses import dataclass, field

from tiltmonitor.tilt import SEARCHING, format_sg
from tiltmonitor.eventlog import event_log

"""
Device registry

Tracks which Tilts are currently being heard.  A Tilt that hasn't been
heard from for TIMEOUT seconds is declared OFF and removed.  While no Tilt
is present the 'searching' placeholder holds the display.

  ABSENT --beacon--> ACTIVE --beacon--> ACTIVE --timeout--> ABSENT
"""

logger = logging.getLogger('tiltmonitor.registry')

DEFAULT_TIMEOUT = 120
GRID_COLUMNS = 3
TIME_FORMAT = '%m/%d/%y %I:%M:%S %p'


def _strftime(t):
  return time.strftime(TIME_FORMAT, time.localtime(t))


@dataclass
class DeviceState:
  color: str
  last_sample: object = None
  last_seen: float = None
  display: dict = field(default_factory=dict)

  def update(self, sample, now):
    self.last_sample = sample
    self.last_seen = sample.captured_at if sample.captured_at is not None else now

    self.display['sg_label'] = f"Specific gravity: {format_sg(sample, sample.sg_raw)} (uncal)"
    self.display['sg'] = format_sg(sample)
    self.display['temp_label'] = f"Temperature: {sample.temp_raw}°F (uncal)"
    self.display['temp'] = f"{sample.temp}°F"
    self.display['timestamp'] = _strftime(self.last_seen)
    self.display['rssi_label'] = f"Signal: {sample.rssi} dBm"


class DeviceRegistry:

  def __init__(self, timeout=DEFAULT_TIMEOUT):
    self.timeout = timeout
    self._devices = {}
    self._searching(time.time())

  def _grid(self, num):
    row = num // GRID_COLUMNS
    return (row, num - row * GRID_COLUMNS)

  def _searching(self, now):
    event_log(f"Adding {SEARCHING.upper()} Tilt in row 0, col 0")
    state = DeviceState(SEARCHING)
    state.display['timestamp'] = _strftime(now)
    self._devices[SEARCHING] = state

  def _delete(self, color):
    if color not in self._devices:
      return
    event_log(f"Deleting {color.upper()} Tilt")
    del self._devices[color]

    if color != SEARCHING:
      if self._devices:
        self._shift()
      else:
        self._searching(time.time())

  def _shift(self):
    for (num, color) in enumerate(self._devices):
      (row, col) = self._grid(num)
      event_log(f"Shifting {color.upper()} Tilt to row {row}, col {col}")

  def __contains__(self, color):
    return color in self._devices

  def __len__(self):
    return len(self._devices)

  def colors(self):
    """Colors of the real devices, in the order they were found"""
    return [c for c in self._devices if c != SEARCHING]

  def get(self, color):
    return self._devices.get(color)

  def states(self):
    return list(self._devices.values())

  def is_searching(self):
    return SEARCHING in self._devices

  def record_sample(self, sample, now=None):
    """Record a decoded beacon; returns True if the Tilt is new"""
    now = time.time() if now is None else now
    added = False
    state = self._devices.get(sample.color)
    if state is None:
      # the first real Tilt replaces the searching notification
      self._delete(SEARCHING)
      (row, col) = self._grid(len(self._devices))
      event_log(f"Adding {sample.color.upper()} Tilt in row {row}, col {col}")
      state = DeviceState(sample.color)
      self._devices[sample.color] = state
      added = True
    state.update(sample, now)
    return added

  def check_liveness(self, now=None):
    """Evict Tilts not heard from within the timeout; returns evicted colors"""
    now = time.time() if now is None else now
    evicted = []
    for color in list(self._devices):
      state = self._devices[color]
      if color == SEARCHING:
        state.display['timestamp'] = _strftime(now)
        continue

      delta = 0
      if state.last_seen is not None and state.last_seen > 0:
        delta = now - state.last_seen

      if delta > self.timeout:
        logger.debug(f"{color} not heard for {delta:.1f}s")
        self._delete(color)
        evicted.append(color)
      else:
        state.display['delta'] = "Received {:.1f} seconds ago".format(delta)
    return evicted

  def set_log_state(self, color, active):
    state = self._devices.get(color)
    if state is not None:
      state.display['log_state'] = f"Logging: {'ACTIVE' if active else 'INACTIVE'}"
