import os
import time
import logging
import configparser

from tiltmonitor.tilt import TILTCOLORS
from tiltmonitor.scanner import DEFAULT_COMMAND
from tiltmonitor.registry import DEFAULT_TIMEOUT
from tiltmonitor.reporter import MIN_LOG_TIME
from tiltmonitor.eventlog import event_log

"""
Persistent configuration

One section per Tilt color:

  [red]
  url = https://script.google.com/macros/s/.../exec
  beer = Test Lager
  interval = 15
  email = brewer@example.com
  autolog = true
  sg = 0.002
  temp = -1.5

and a [system] section for the capture command and timeout.  A section
flagged 'updated = True' is written back by the main loop.
"""

logger = logging.getLogger('tiltmonitor.config')

CONFIGFILE = os.path.expanduser('~/.tiltmonitor.cfg')

LOG_KEYS = ('url', 'beer', 'interval', 'email', 'autolog')
CAL_KEYS = ('sg', 'temp')


def new_config():
  # URLs are full of '%'
  return configparser.ConfigParser(interpolation=None)


def load_config(path=CONFIGFILE):
  config = new_config()
  try:
    found = config.read(path)
  except configparser.Error as e:
    logger.error(f"Could not parse {path}: {e}; using defaults")
    config = new_config()
    found = []

  if found:
    event_log(f"Loading configuration options from {path}")

  # Add default values in case config file was missing/empty
  if 'system' not in config:
    config['system'] = {}
  system = config['system']
  for (key, value) in (('command', DEFAULT_COMMAND), ('timeout', str(DEFAULT_TIMEOUT))):
    if not system.get(key, '').strip():
      system[key] = value
      system['updated'] = 'True'
  try:
    system.getint('timeout')
  except ValueError:
    logger.error(f"Invalid timeout '{system['timeout']}'; using {DEFAULT_TIMEOUT}")
    system['timeout'] = str(DEFAULT_TIMEOUT)
    system['updated'] = 'True'

  for color in TILTCOLORS[1:]:
    if color not in config:
      config[color] = {}
    section = config[color]
    nm = f"{color.upper()} Tilt"
    for key in LOG_KEYS:
      if key in section:
        event_log(f"{nm}: setting log {key} = {section[key]}")
    for key in CAL_KEYS:
      if key in section:
        event_log(f"{nm}: setting cal {key.upper()} = {section[key]}")

  for section in config.sections():
    if section != 'system' and section not in TILTCOLORS:
      event_log(f"Error: invalid Tilt color '{section}' for config options",
                logging.ERROR)
  return config


def default_interval(section):
  """Force the log interval to the minimum if none is set yet"""
  if not section.get('interval', '').strip():
    section['interval'] = str(MIN_LOG_TIME)


def is_updated(config):
  return any(config[s].getboolean('updated', fallback=False)
             for s in config.sections())


def write_config(config, path=CONFIGFILE):
  for s in config.sections():
    config[s]['updated'] = 'False'
  with open(path, 'w') as configfile:
    configfile.write("# Tilt hydrometer configuration options\n"
                     f"# written: {time.strftime('%m/%d/%y %I:%M:%S %p')}\n\n")
    config.write(configfile)
  logger.debug(f"Wrote {path}")
