import logging
from collections import deque

"""
Event and beacon logs

Events (devices added/removed, calibrations, log points) and raw beacon
dumps go through two loggers so they can be routed and filtered like any
other log output.  The event history is also kept in memory for the status
display; beacons are not kept, there are far too many of them.
"""

EVENT_LOGGER = 'tiltmonitor.events'
BEACON_LOGGER = 'tiltmonitor.beacon'

EVENT_FORMAT = '[%(asctime)s] %(message)s'
EVENT_DATEFMT = '%m/%d/%y %I:%M:%S %p'

HISTORY_SIZE = 1000

_events = logging.getLogger(EVENT_LOGGER)
_beacons = logging.getLogger(BEACON_LOGGER)


def event_log(message, level=logging.INFO):
  _events.log(level, message)


def beacon_log(message):
  _beacons.debug(message)


class EventFormatter(logging.Formatter):
  """Indents continuation lines of multi-line messages under the first"""

  def format(self, record):
    text = super().format(record)
    (first, *rest) = text.split('\n')
    if not rest:
      return first
    spacer = ' ' * max(0, len(first) - len(record.getMessage().split('\n')[0]))
    return '\n'.join([first] + [spacer + line for line in rest])


class EventHistoryHandler(logging.Handler):

  def __init__(self, size=HISTORY_SIZE):
    super().__init__()
    self.history = deque(maxlen=size)
    self.setFormatter(EventFormatter(EVENT_FORMAT, EVENT_DATEFMT))

  def emit(self, record):
    try:
      self.history.append(self.format(record))
    except Exception:
      self.handleError(record)

  def lines(self):
    return list(self.history)
