#!/bin/env python3
import sys
import signal
import logging
import logging.handlers
import argparse
import threading

from tiltmonitor import __version__
from tiltmonitor.tilt import TILTCOLORS
from tiltmonitor.scanner import TiltScanner, CaptureError, STDIN_COMMAND, DEFAULT_COMMAND
from tiltmonitor.scheduler import Scheduler
from tiltmonitor.monitor import TiltMonitor
from tiltmonitor.config import CONFIGFILE, load_config, write_config, is_updated
from tiltmonitor.eventlog import (EventFormatter, EventHistoryHandler,
                                  EVENT_FORMAT, EVENT_DATEFMT)

"""
Tilt hydrometer monitor

  sudo hcitool -i hci0 lescan --duplicates | sudo hcidump -i hci0 -tR
        |
   TiltScanner thread ---SimpleQueue---> TiltMonitor (scheduler, main thread)
                                              |
                                         log sessions ---POST---> web end-point

The capture command runs under sudo; hci0 is the built-in antenna, hci1
the first additional one.
"""

logger = logging.getLogger('tiltmonitor')

LOG_FILENAME = 'tiltmonitor.log'
LOG_FORMAT = '%(asctime)s - %(name)s:%(lineno)d %(levelname)s - %(message)s'

# how often to check for config changes to write back
CONFIG_CHECK_S = 5.0

# Globals
tilt = None
tilt_thread = None
monitor = None
scheduler = None


def setup_logging(verbose=0, logfile=LOG_FILENAME):
  logfile_handler = logging.handlers.RotatingFileHandler(
                      logfile, maxBytes=20971520, backupCount=0)
  logfile_handler.setLevel(logging.DEBUG)

  console = logging.StreamHandler()
  console.setLevel(logging.WARNING)
  if verbose == 1:
    console.setLevel(logging.INFO)
  elif verbose > 1:
    console.setLevel(logging.DEBUG)

  formatter = logging.Formatter(LOG_FORMAT)
  logfile_handler.setFormatter(formatter)
  console.setFormatter(formatter)

  logger.addHandler(logfile_handler)
  logger.addHandler(console)
  logger.setLevel(logging.DEBUG)

  history = EventHistoryHandler()
  events = logging.getLogger('tiltmonitor.events')
  events.addHandler(history)
  # events read better without the module/line noise
  event_console = logging.StreamHandler()
  event_console.setLevel(console.level)
  event_console.setFormatter(EventFormatter(EVENT_FORMAT, EVENT_DATEFMT))
  events.addHandler(event_console)
  events.propagate = False
  events.addHandler(logfile_handler)

  logging.getLogger("tiltmonitor.beacon").setLevel(logging.DEBUG if verbose > 1 else logging.INFO)
  logging.getLogger("tiltmonitor.scanner").setLevel(logging.INFO)
  logging.getLogger("tiltmonitor.scheduler").setLevel(logging.INFO)
  logging.getLogger("tiltmonitor.display").setLevel(logging.INFO)
  logging.getLogger("tiltmonitor.reporter").setLevel(logging.DEBUG)

  # requests/urllib3 chatter only when really verbose
  logging.getLogger("urllib3").setLevel(logging.DEBUG if verbose > 2 else logging.WARNING)
  return history


def parse_args(argv=None):
  parser = argparse.ArgumentParser(
    description='Read Tilt hydrometers and log their readings to the web')
  parser.add_argument('-v', '--verbose', action='count', default=0,
                      help='-v for the event log, -vv for beacon data too')
  parser.add_argument('-c', '--config', default=CONFIGFILE,
                      help=f'config file (default: {CONFIGFILE})')
  parser.add_argument('--command',
                      help=f"capture command, '{STDIN_COMMAND}' to read hcidump output from stdin")
  parser.add_argument('--timeout', type=int,
                      help='seconds without a beacon before a Tilt is dropped')
  parser.add_argument('--calibrate-water', metavar='COLOR', action='append',
                      default=[], choices=TILTCOLORS[1:],
                      help='zero the SG offset of a Tilt floating in water')
  parser.add_argument('--set-offset', nargs=3, action='append', default=[],
                      metavar=('COLOR', 'FIELD', 'VALUE'),
                      help="set a manual 'sg' or 'temp' offset")
  parser.add_argument('--export', nargs=2, action='append', default=[],
                      metavar=('COLOR', 'PATH'),
                      help='write the log points of a Tilt to CSV on exit')
  parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
  args = parser.parse_args(argv)
  for (color, *_) in args.set_offset + args.export:
    if color.lower() not in TILTCOLORS[1:]:
      parser.error(f"invalid Tilt color '{color}' (choose from {', '.join(TILTCOLORS[1:])})")
  return args


def signal_handler(sig, frame):
  logger.warning("Shutting Down")
  if scheduler:
    scheduler.end()


def scanner_closed():
  if scheduler:
    scheduler.end()


def check_config(config, path):
  if is_updated(config):
    logger.debug("Change found, update configfile")
    write_config(config, path)


def main(argv=None):
  global tilt, tilt_thread, monitor, scheduler

  args = parse_args(argv)
  setup_logging(args.verbose)

  signal.signal(signal.SIGINT, signal_handler)
  signal.signal(signal.SIGTERM, signal_handler)

  logger.debug("Begin")
  config = load_config(args.config)
  if args.command:
    config['system']['command'] = args.command
  if args.timeout:
    config['system']['timeout'] = str(args.timeout)

  scheduler = Scheduler()

  # Thread to monitor Tilts
  tilt = TiltScanner(config['system'].get('command', DEFAULT_COMMAND),
                     on_close=scanner_closed)
  try:
    tilt.start()
  except CaptureError as e:
    logger.critical(str(e))
    return 1
  tilt_thread = threading.Thread(target=tilt.control_thread, daemon=True)
  tilt_thread.start()

  monitor = TiltMonitor(config, tilt.get_queue(), scheduler)
  monitor.schedule()
  scheduler.repeat(CONFIG_CHECK_S, check_config, config, args.config)

  for (color, field, value) in args.set_offset:
    monitor.set_offset(color.lower(), field.lower(), value)
  for color in args.calibrate_water:
    monitor.calibrate_water(color)

  logger.debug("Staring main loop")
  scheduler.run()

  # the scanner thread may be stuck in a read; leave it behind
  tilt.end()
  monitor.end()
  for (color, path) in args.export:
    monitor.export(color.lower(), path)
  write_config(config, args.config)
  logger.debug("done")
  return 1 if tilt.failed else 0


if __name__ == "__main__":
  sys.exit(main())
