import pytest
import requests

from tiltmonitor.scanner import RawFrame

TIMESTAMP = ('2025', '02', '03', '19', '42', '17', '123456')

# hcidump bytes ahead of the iBeacon UUID: event header, address, flags, mfg data
PREFIX = '043E2A020103005A47821C3DC71E0201041AFF4C000215'
UUID = 'A495BB{}0C5B14B44B5121370F02D74DE'


def tilt_payload(index=2, temp=68, sg=1042, batt=0xC5, rssi=-66):
  return (PREFIX + UUID.format(index) +
          f"{temp:04X}{sg:04X}{batt:02X}{rssi & 0xFF:02X}")


class FakeHttp:
  """Stands in for requests.Session; replies with the queued responses"""

  def __init__(self, *responses):
    self.responses = list(responses)
    self.calls = []

  def post(self, url, **kwargs):
    self.calls.append((url, kwargs))
    reply = self.responses.pop(0)
    if isinstance(reply, Exception):
      raise reply
    return reply


def make_response(status=200, body=b'{}', reason='OK'):
  resp = requests.Response()
  resp.status_code = status
  resp.reason = reason
  resp._content = body
  resp.encoding = 'utf-8'
  resp.url = 'https://example.com/log'
  return resp


@pytest.fixture
def payload():
  return tilt_payload


@pytest.fixture
def make_frame():
  def _make(payload, timestamp=TIMESTAMP):
    return RawFrame(*timestamp, payload=payload)
  return _make


@pytest.fixture
def response():
  return make_response


@pytest.fixture
def http():
  return FakeHttp
