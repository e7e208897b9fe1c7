import logging

from tiltmonitor.tilt import SEARCHING

"""
Tilt status display

 Console version of the Tilt display boxes, one line per Tilt:

  RED     1.042  68°F  Signal: -62 dBm  Received 3.1 seconds ago  Logging: ACTIVE
  GREEN   1.0135 66.5°F  Signal: -70 dBm  Received 0.4 seconds ago  Logging: INACTIVE

 or, with no Tilt in range:

  Searching for Tilt...  02/03/25 07:42:17 PM
"""

logger = logging.getLogger('tiltmonitor.display')


class Display:

  def __init__(self, registry):
    self._registry = registry
    self._last_key = None

  def render(self):
    lines = []
    for state in self._registry.states():
      d = state.display
      if state.color == SEARCHING:
        lines.append("Searching for Tilt...  {}".format(d.get('timestamp', '')))
        continue
      lines.append("{:8s}{:>7s} {:>7s}  {}  {}  {}".format(
                     state.color.upper(),
                     d.get('sg', ''),
                     d.get('temp', ''),
                     d.get('rssi_label', ''),
                     d.get('delta', ''),
                     d.get('log_state', '')).rstrip())
    return lines

  def update_display(self):
    lines = self.render()
    for line in lines:
      logger.debug(f"Display Update: {line}")

    # only bother the console when a reading changes, not the clock
    key = [(s.color, s.display.get('sg'), s.display.get('temp'),
            s.display.get('log_state')) for s in self._registry.states()]
    if key != self._last_key:
      for line in lines:
        logger.info(line)
    self._last_key = key
    return lines
