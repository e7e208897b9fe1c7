#!/usr/bin/env python3

import os
import re
import sys
import signal
import logging
import subprocess
from collections import namedtuple
from queue import SimpleQueue

"""
  hcidump frame reader

  Groups the hex byte lines printed by 'hcidump -tR' into complete packets.
  Every packet starts with a timestamped '>' line:

    2025-02-03 19:42:17.123456 > 04 3E 2A 02 01 03 00 5A 47 82 1C 3D
      C7 1E 02 01 04 1A FF 4C 00 02 15 A4 95 BB 20 0C 5B 14 B4 4B 51
      ...

  Packets are handed to the main thread through a SimpleQueue; nothing here
  touches decoded Tilt state.
"""

logger = logging.getLogger('tiltmonitor.scanner')

DEFAULT_COMMAND = 'sudo hcitool -i hci0 lescan --duplicates | sudo hcidump -i hci0 -tR'
STDIN_COMMAND = '-'
# a capture that survives this long is taken as started
STARTUP_WAIT_S = 1.0

TIME_REGEX = re.compile(
  r'^\s*(\d{4})-(\d{2})-(\d{2})\s(\d{2}):(\d{2}):(\d{2})\.(\d+)\s>')
HEX_REGEX = re.compile(r'^\s*[0-9A-Fa-f]{2}(\s+[0-9A-Fa-f]{2})*\s*$')

RawFrame = namedtuple('RawFrame',
                      ['year', 'month', 'day', 'hour', 'minute', 'second',
                       'usec', 'payload'])


class CaptureError(Exception):
  """The capture process could not be started"""


class FrameAssembler:

  def __init__(self):
    self._bytes = None

  def feed(self, line):
    """
    Consume one line of scanner output.  Returns a RawFrame when the line
    closes the packet in progress, otherwise None.

    The frame carries the timestamp of the delimiter that closes it.
    """
    frame = None
    line = line.rstrip('\r\n')

    m = TIME_REGEX.match(line)
    if m:
      if self._bytes is not None:
        frame = RawFrame(*m.groups(), payload=self._bytes)
      self._bytes = ''
      # hcidump prints the first bytes of the new packet after the '>'
      line = line[m.end():]

    # bytes seen before the first delimiter belong to no known packet
    if self._bytes is not None and HEX_REGEX.match(line):
      self._bytes += ''.join(line.split())

    return frame

  def pending(self):
    return self._bytes


def start_capture(command=DEFAULT_COMMAND):
  """Launch the capture pipeline; returns the process (None for stdin)"""
  if command == STDIN_COMMAND:
    return None
  try:
    # own process group so end() reaches every stage of the pipeline
    proc = subprocess.Popen(command, shell=True, stdout=subprocess.PIPE,
                            stderr=subprocess.DEVNULL, text=True, bufsize=1,
                            start_new_session=True)
  except OSError as e:
    raise CaptureError(f"Cannot run '{command}': {e}") from e

  # shell=True always spawns; a missing tool shows up as a quick exit
  try:
    returncode = proc.wait(timeout=STARTUP_WAIT_S)
  except subprocess.TimeoutExpired:
    returncode = None
  if returncode:
    raise CaptureError(f"Cannot run '{command}': exit status {returncode}")
  logger.info(f"Started capture: {command} (pid {proc.pid})")
  return proc


def stop_capture(proc):
  if proc is None or proc.poll() is not None:
    return
  try:
    os.killpg(proc.pid, signal.SIGTERM)
  except ProcessLookupError:
    pass


class TiltScanner:

  def __init__(self, command=DEFAULT_COMMAND, stream=None, on_close=None):
    self._command = command
    self._proc = None
    self._stream = stream
    self._on_close = on_close
    self._assembler = FrameAssembler()
    self.q = SimpleQueue()
    self._run = True
    self.failed = False

  def start(self):
    if self._stream is None:
      self._proc = start_capture(self._command)
      self._stream = self._proc.stdout if self._proc else sys.stdin

  def get_queue(self):
    return self.q

  def control_thread(self):
    try:
      for line in self._stream:
        if not self._run:
          break
        frame = self._assembler.feed(line)
        if frame is not None:
          self.q.put(frame)
    except (OSError, ValueError) as e:
      logger.error(f"Scanner read failure: {e}")
    logger.info("Scanner input closed")

    if self._proc is not None and self._run:
      returncode = self._proc.wait()
      if returncode:
        logger.error(f"Capture '{self._command}' exited with status {returncode}")
        self.failed = True
    if self._on_close is not None:
      self._on_close()

  def end(self):
    self._run = False
    stop_capture(self._proc)
