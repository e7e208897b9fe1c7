import csv
import json
from decimal import Decimal
from urllib.parse import urlencode

import pytest
import requests

from tiltmonitor.tilt import DecodedSample
from tiltmonitor.scheduler import Scheduler
from tiltmonitor.reporter import (LogSession, average, excel_time, export_csv,
                                  format_record, is_sheets, send_point,
                                  FORM_CONTENT_TYPE, MIN_LOG_TIME)


SHEETS_URL = 'https://script.google.com/macros/s/abc123/exec'
PLAIN_URL = 'http://brewlogger.local/log'


def sample(at, sg='1.010', temp='65', rssi=-60, color='green'):
  return DecodedSample(color=color, captured_at=at, rssi=rssi, battery_weeks=None,
                       sg_raw=Decimal(sg), temp_raw=Decimal(temp),
                       sg=Decimal(sg), temp=Decimal(temp), is_pro=False,
                       payload='')


def params(**kwargs):
  p = {'url': PLAIN_URL, 'interval': '15', 'beer': 'Test Lager', 'email': ''}
  p.update(kwargs)
  return p


def active_session(config, http, last_logged=0):
  session = LogSession('green', config, http=http)
  session.timer = Scheduler().repeat(900, lambda: None)
  session.last_logged = last_logged
  return session


# ------------------------------------------------------------------
# helpers
# ------------------------------------------------------------------

class TestExcelTime:

  def test_unix_epoch(self):
    assert excel_time(0) == 25569

  def test_fractional_day(self):
    assert excel_time(86400 * 1.5) == pytest.approx(25570.5)


class TestAverage:

  def test_all_newer(self):
    data = [sample(100, '1.010', '65', -60), sample(200, '1.012', '66', -62)]
    assert average(data, 50) == (Decimal('1.011'), Decimal('65.5'), Decimal('-61'))

  def test_older_samples_still_counted(self):
    # the sum skips the old sample but the divisor doesn't
    data = [sample(10, '1.010', '65', -60), sample(200, '1.012', '66', -62)]
    assert average(data, 50) == (Decimal('0.506'), Decimal('33'), Decimal('-31'))


class TestFormatRecord:

  def test_fields_in_order(self):
    record = format_record(0, Decimal('65.5'), Decimal('1.011'), 'Lager', 'green', Decimal('-61'))
    assert list(record) == ['Timepoint', 'Temp', 'SG', 'Beer', 'Color', 'Comment']
    assert record == {'Timepoint': '25569.000000', 'Temp': '65.5', 'SG': '1.0110',
                      'Beer': 'Lager', 'Color': 'GREEN', 'Comment': '-61.0'}


class TestIsSheets:

  def test_google_host(self):
    assert is_sheets(SHEETS_URL)

  def test_google_only_in_path(self):
    assert not is_sheets('http://example.com/google/log')

  def test_empty(self):
    assert not is_sheets('')

  def test_malformed(self):
    assert not is_sheets('http://[oops/log')


# ------------------------------------------------------------------
# validation
# ------------------------------------------------------------------

class TestValidate:

  def test_valid(self):
    assert LogSession('green', params(), http=object()).validate() == []

  @pytest.mark.parametrize('url', ['ftp://example.com/log', 'example.com/log',
                                   'http://', 'not a url', 'http://[oops/log'])
  def test_bad_url(self, url):
    assert LogSession('green', params(url=url), http=object()).validate() == ['invalid log URL']

  @pytest.mark.parametrize('interval', ['14', '61', 'ten', '15.5', '-20'])
  def test_bad_interval_resets_to_minimum(self, interval):
    config = params(interval=interval)
    errors = LogSession('green', config, http=object()).validate()
    assert len(errors) == 1 and 'interval' in errors[0]
    assert config['interval'] == str(MIN_LOG_TIME)

  @pytest.mark.parametrize('interval', ['15', '60', '30'])
  def test_interval_bounds(self, interval):
    assert LogSession('green', params(interval=interval), http=object()).validate() == []

  def test_missing_fields_each_reported(self):
    config = {'url': '', 'interval': '', 'beer': ''}
    errors = LogSession('green', config, http=object()).validate()
    assert sorted(errors) == ['must provide log beer', 'must provide log interval',
                              'must provide log url']
    assert config['interval'] == str(MIN_LOG_TIME)

  def test_email_ignored_for_plain_url(self):
    assert LogSession('green', params(email='nope'), http=object()).validate() == []

  def test_email_required_for_sheets(self):
    errors = LogSession('green', params(url=SHEETS_URL), http=object()).validate()
    assert errors == ['must provide log email']

  def test_email_checked_for_sheets(self):
    errors = LogSession('green', params(url=SHEETS_URL, email='bob@'), http=object()).validate()
    assert errors == ['invalid email address']
    ok = LogSession('green', params(url=SHEETS_URL, email='Bob.Smith@aol.com'), http=object())
    assert ok.validate() == []


# ------------------------------------------------------------------
# flush
# ------------------------------------------------------------------

class TestFlush:

  def test_averages_and_posts(self, http, response):
    fake = http(response())
    session = active_session(params(), fake, last_logged=50)
    session.data = [sample(100, '1.010', '65', -60), sample(200, '1.012', '66', -62)]

    assert session.flush(now=300)
    (url, kwargs) = fake.calls[0]
    assert url == PLAIN_URL
    assert kwargs['data'] == {'Timepoint': '{:f}'.format(excel_time(300)),
                              'Temp': '65.5', 'SG': '1.0110', 'Beer': 'Test Lager',
                              'Color': 'GREEN', 'Comment': '-61.0'}
    assert kwargs['headers']['Content-Type'] == FORM_CONTENT_TYPE
    assert kwargs['allow_redirects']
    assert session.data == []
    assert session.last_logged == 300
    assert len(session.records) == 1

  def test_empty_buffer_skipped(self, http):
    fake = http()
    session = active_session(params(), fake)
    assert not session.flush(now=300)
    assert fake.calls == []
    assert session.records == []

  def test_no_new_data_skipped(self, http):
    fake = http()
    session = active_session(params(), fake, last_logged=200)
    buffered = [sample(100), sample(200)]
    session.data = list(buffered)
    assert not session.flush(now=300)
    assert session.data == buffered
    assert fake.calls == []

  def test_failed_post_not_retried(self, http, response):
    fake = http(response(status=500, reason='Server Error', body=b'boom'))
    session = active_session(params(), fake, last_logged=50)
    session.data = [sample(100)]
    assert not session.flush(now=300)
    # the interval is gone either way
    assert session.data == []
    assert len(session.records) == 1
    assert len(fake.calls) == 1

  def test_connection_error(self, http):
    fake = http(requests.exceptions.ConnectionError('no route'))
    session = active_session(params(), fake, last_logged=50)
    session.data = [sample(100)]
    assert not session.flush(now=300)

  def test_non_json_reply_is_success(self, http, response):
    fake = http(response(body=b'<html>ok</html>'))
    session = active_session(params(), fake, last_logged=50)
    session.data = [sample(100)]
    assert session.flush(now=300)

  def test_beer_name_from_sheets(self, http, response):
    reply = {'beername': 'Test Lager,3', 'doclongurl': 'https://docs.google.com/x'}
    fake = http(response(body=json.dumps(reply).encode()))
    config = params(url=SHEETS_URL, email='bob@aol.com')
    session = active_session(config, fake, last_logged=50)
    session.data = [sample(100)]
    assert session.flush(now=300)
    assert session.beer == 'Test Lager,3'
    assert config['beer'] == 'Test Lager,3'
    assert config['updated'] == 'True'
    assert session.doclongurl == 'https://docs.google.com/x'

  def test_flushes_do_not_overlap(self, http, response):
    session = active_session(params(), None, last_logged=50)
    session.data = [sample(100)]

    class Reentrant:
      calls = 0
      def post(self, url, **kwargs):
        Reentrant.calls += 1
        assert session.flush(now=301) is False
        return response()

    session._http = Reentrant()
    assert session.flush(now=300)
    assert Reentrant.calls == 1


# ------------------------------------------------------------------
# start / stop
# ------------------------------------------------------------------

class TestStart:

  def test_init_point_and_timer(self, http, response):
    fake = http(response())
    session = LogSession('green', params(interval='20'), http=fake)
    sched = Scheduler(clock=lambda: 1000.0)
    assert session.start(sched, latest=sample(10, '1.020', '64', -70), now=1000.0)
    assert session.active
    assert session.timer.interval == 20 * 60
    assert fake.calls[0][1]['data']['SG'] == '1.0200'
    assert fake.calls[0][1]['data']['Comment'] == '-70.0'

  def test_init_point_carries_email_for_sheets(self, http, response):
    fake = http(response(body=b'{"beername": "Lager,7"}'))
    session = LogSession('green', params(url=SHEETS_URL, email='bob@aol.com', beer='Lager'),
                         http=fake)
    assert session.start(Scheduler(), latest=sample(10, rssi=-70), now=1000.0)
    assert fake.calls[0][1]['data']['Comment'] == 'bob@aol.com'
    # the exported record keeps the RSSI
    assert session.records[0]['Comment'] == '-70.0'
    assert session.beer == 'Lager,7'

  def test_invalid_parameters(self, http):
    fake = http()
    session = LogSession('green', params(url='nope'), http=fake)
    assert not session.start(Scheduler(), latest=sample(10), now=1000.0)
    assert not session.active
    assert fake.calls == []

  def test_no_data_not_started(self, http):
    session = LogSession('green', params(), http=http())
    assert not session.start(Scheduler(), latest=None, now=1000.0)
    assert not session.active

  def test_failed_init_point_not_started(self, http, response):
    session = LogSession('green', params(), http=http(response(status=404, reason='Not Found')))
    assert not session.start(Scheduler(), latest=sample(10), now=1000.0)
    assert not session.active

  def test_stop_cancels_timer(self, http, response):
    session = LogSession('green', params(), http=http(response()))
    sched = Scheduler()
    session.start(sched, latest=sample(10), now=1000.0)
    timer = session.timer
    session.stop()
    assert timer.cancelled
    assert not session.active
    assert len(sched) == 0

  def test_samples_buffered_only_while_active(self, http, response):
    session = LogSession('green', params(), http=http(response()))
    session.add_sample(sample(5))
    assert session.data == []
    session.start(Scheduler(), latest=sample(10), now=1000.0)
    session.add_sample(sample(1001))
    assert [s.captured_at for s in session.data] == [1001]


# ------------------------------------------------------------------
# send_point
# ------------------------------------------------------------------

class TestSendPoint:

  def test_form_body_encodes(self, http, response):
    fake = http(response())
    body = {'Beer': 'Pale Ale & Co', 'Comment': 'bob@aol.com'}
    assert send_point(fake, PLAIN_URL, body) == {}
    sent = fake.calls[0][1]['data']
    assert urlencode(sent) == 'Beer=Pale+Ale+%26+Co&Comment=bob%40aol.com'

  def test_timeout(self, http):
    assert send_point(http(requests.exceptions.Timeout()), PLAIN_URL, {}) is None

  def test_error_reports_status_and_body(self, http, response, caplog):
    fake = http(response(status=403, reason='Forbidden', body=b'denied'))
    with caplog.at_level('ERROR', logger='tiltmonitor.events'):
      assert send_point(fake, PLAIN_URL, {}) is None
    assert '403 Forbidden' in caplog.text
    assert 'denied' in caplog.text


# ------------------------------------------------------------------
# export
# ------------------------------------------------------------------

class TestExport:

  def test_header_then_every_record(self, tmp_path):
    records = [format_record(0, Decimal(65), Decimal('1.05'), 'Lager', 'red', Decimal(-60)),
               format_record(900, Decimal(66), Decimal('1.04'), 'Lager', 'red', Decimal(-61)),
               format_record(1800, Decimal(67), Decimal('1.03'), 'Lager', 'red', Decimal(-62))]
    path = tmp_path / 'red.csv'
    assert export_csv(records, path)

    with open(path, newline='') as f:
      rows = list(csv.reader(f))
    assert len(rows) == 4
    assert rows[0] == ['Timepoint', 'Temp', 'SG', 'Beer', 'Color', 'Comment']
    assert rows[1] == list(records[0].values())
    assert rows[3][2] == '1.0300'

  def test_nothing_to_export(self, tmp_path):
    path = tmp_path / 'none.csv'
    assert not export_csv([], path)
    assert not path.exists()
