#!/usr/bin/env python3

import re
import logging
from struct import pack, unpack, error as StructError
from collections import namedtuple
from datetime import datetime
from decimal import Decimal

"""
  Tilt Hydrometer beacon decoder

  Based on details from:
  https://kvurd.com/blog/tilt-hydrometer-ibeacon-data-format/

  The raw hcidump packet ends with the iBeacon UUID followed by
  major (temp), minor (SG), tx power and the RSSI appended by the
  controller.  Tilt reports weeks since battery change in place of
  tx power.
"""

logger = logging.getLogger('tiltmonitor.tilt')

# the UUID to match in an iBeacon packet for Tilt devices
ID_REGEX = re.compile(r'.*A495BB([1-8])0C5B14B44B5121370F02D74DE')

SEARCHING = 'searching'
TILTCOLORS = [SEARCHING, 'red', 'green', 'black', 'purple',
              'orange', 'blue', 'yellow', 'pink']

# tx power of an iBeacon that isn't reporting battery age
BATTERY_NOT_REPORTED = -59

# Tilt Pro reports an extra decimal of precision
PRO_SG_THRESHOLD = 1500

DecodedSample = namedtuple('DecodedSample',
                           ['color', 'captured_at', 'rssi', 'battery_weeks',
                            'sg_raw', 'temp_raw', 'sg', 'temp', 'is_pro',
                            'payload'])


def reverse_bytes(hexstr):
  """Reverse the byte order of a hex string ('AABBCC' -> 'CCBBAA')"""
  return ''.join(reversed(re.findall('..', hexstr)))


def frame_time(frame):
  """Epoch time of a RawFrame's timestamp, None if it isn't a real date"""
  try:
    t = datetime(int(frame.year), int(frame.month), int(frame.day),
                 int(frame.hour), int(frame.minute), int(frame.second))
    return t.timestamp() + int(frame.usec) / 1e6
  except (ValueError, OverflowError, OSError):
    return None


def decode_frame(frame, calibration=None):
  """
  Decode a RawFrame into a DecodedSample.  Returns None for anything that
  isn't a Tilt beacon.
  """
  m = ID_REGEX.match(frame.payload.upper())
  if not m:
    return None
  color = TILTCOLORS[int(m.group(1))]

  data = reverse_bytes(frame.payload[m.end():])
  try:
    (rssi, batt, sg, temp) = unpack('<bBHH', bytes.fromhex(data)[:6])
  except (StructError, ValueError) as e:
    logger.debug(f"Short {color} beacon '{frame.payload}': {e}")
    return None

  batt_weeks = batt
  if unpack('b', pack('B', batt))[0] == BATTERY_NOT_REPORTED:
    batt_weeks = None

  is_pro = sg > PRO_SG_THRESHOLD
  if is_pro:
    sg_raw = Decimal(sg).scaleb(-4)
    temp_raw = Decimal(temp).scaleb(-1)
  else:
    sg_raw = Decimal(sg).scaleb(-3)
    temp_raw = Decimal(temp)

  sg_cal = sg_raw
  temp_cal = temp_raw
  if calibration is not None:
    (sg_offset, temp_offset) = calibration.offsets(color)
    sg_cal += sg_offset
    temp_cal += temp_offset

  captured_at = frame_time(frame)
  if captured_at is None:
    logger.warning(f"Could not create timestamp for {color} beacon")

  return DecodedSample(color=color,
                       captured_at=captured_at,
                       rssi=rssi,
                       battery_weeks=batt_weeks,
                       sg_raw=sg_raw,
                       temp_raw=temp_raw,
                       sg=sg_cal,
                       temp=temp_cal,
                       is_pro=is_pro,
                       payload=data)


def format_sg(sample, value=None):
  value = sample.sg if value is None else value
  return "{:.4f}".format(value) if sample.is_pro else "{:.3f}".format(value)


def describe(sample):
  """Multi-line beacon log entry"""
  lines = [f"{sample.color.upper()} Tilt beacon",
           f"SG: {format_sg(sample)}",
           f"Temp: {sample.temp} degF",
           f"RSSI: {sample.rssi} dBm"]
  if sample.battery_weeks:
    lines.append(f"Battery: {sample.battery_weeks} weeks old")
  lines.append(f"Raw data: {sample.payload}")
  return '\n'.join(lines)
