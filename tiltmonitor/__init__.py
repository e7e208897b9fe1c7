"""
  Tilt hydrometer monitor

  Reads Tilt iBeacon data from hcidump output, keeps a live readout per
  Tilt color and logs averaged readings to a web end-point.
"""

__version__ = '1.1.0'
