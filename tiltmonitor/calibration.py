import logging
from decimal import Decimal, InvalidOperation

from tiltmonitor.eventlog import event_log

"""
Calibration offsets

Offsets are additive and live in each color's config section ('sg' and
'temp') so they survive restarts.  A missing or empty offset is zero.
"""

logger = logging.getLogger('tiltmonitor.calibration')

FIELDS = ('sg', 'temp')
ZERO = Decimal(0)

# a water reading should be exactly this
WATER_SG = Decimal(1)


def _to_decimal(value):
  if value is None or str(value).strip() == '':
    return None
  return Decimal(str(value).strip())


class CalibrationStore:

  def __init__(self, config):
    self._config = config

  def _section(self, color):
    if color not in self._config:
      self._config[color] = {}
    return self._config[color]

  def offset(self, color, field):
    if color not in self._config:
      return ZERO
    try:
      value = _to_decimal(self._config[color].get(field))
    except InvalidOperation:
      logger.warning(f"Ignoring invalid {field} offset for {color}: "
                     f"{self._config[color].get(field)}")
      return ZERO
    return ZERO if value is None else value

  def offsets(self, color):
    return (self.offset(color, 'sg'), self.offset(color, 'temp'))

  def set_gravity_calibration(self, color, raw_sg):
    offset = WATER_SG - Decimal(str(raw_sg))
    section = self._section(color)
    section['sg'] = str(offset)
    section['updated'] = 'True'
    event_log(f"{color.upper()} Tilt: water SG calibration complete"
              f"\nSG offset: {offset:.3f}")
    return offset

  def set_manual_offset(self, color, field, value):
    if field not in FIELDS:
      event_log(f"Error: invalid calibration field '{field}'", logging.ERROR)
      return False
    try:
      offset = _to_decimal(value)
    except InvalidOperation:
      event_log(f"Error: invalid {field.upper()} offset '{value}' for "
                f"{color.upper()} Tilt", logging.ERROR)
      return False

    section = self._section(color)
    section[field] = '' if offset is None else str(offset)
    section['updated'] = 'True'
    event_log(f"{color.upper()} Tilt: manual {field.upper()} calibration complete"
              f"\n{field.upper()} offset: {offset if offset is not None else 'NONE'}")
    return True
