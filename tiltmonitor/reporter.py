import re
import csv
import time
import logging
from collections import namedtuple
from decimal import Decimal
from urllib.parse import urlsplit

import requests

from tiltmonitor.eventlog import event_log

"""
Web end-point logger

Buffers every beacon of a Tilt between log points, then POSTs the average
of the interval to the configured URL.  Works with simple form loggers and
with the Tilt Google Sheets app script, which creates a new sheet when the
first point of a log carries an email address in place of the RSSI, and
answers with the sheet's unique beer name ("lager" becomes "lager,123")
that later points must use to append to it.

Nothing is retried; a point that fails to send is gone.
"""

logger = logging.getLogger('tiltmonitor.reporter')

MIN_LOG_TIME = 15  # minutes
MAX_LOG_TIME = 60

FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded; charset=utf-8'
POST_TIMEOUT_S = 30

# Excel/Sheets day zero is 1899-12-30; the Unix epoch is day 25569
EXCEL_EPOCH_DAYS = 25569
SECONDS_PER_DAY = 86400

SHEETS_HOST = 'google'
TIME_FORMAT = '%m/%d/%y %I:%M:%S %p'

# RFC 5322 address, from https://emailregex.com
EMAIL_REGEX = re.compile(
  r"""(?:[a-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[a-z0-9!#$%&'*+/=?^_`{|}~-]+)*"""
  r'''|"(?:[\x01-\x08\x0b\x0c\x0e-\x1f\x21\x23-\x5b\x5d-\x7f]'''
  r'''|\\[\x01-\x09\x0b\x0c\x0e-\x7f])*")@'''
  r'''(?:(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]*[a-z0-9])?'''
  r'''|\[(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}'''
  r'''(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?|[a-z0-9-]*[a-z0-9]:'''
  r'''(?:[\x01-\x08\x0b\x0c\x0e-\x1f\x21-\x5a\x53-\x7f]'''
  r'''|\\[\x01-\x09\x0b\x0c\x0e-\x7f])+)\])''',
  re.IGNORECASE)


def excel_time(epoch):
  """Seconds since the Unix epoch as a spreadsheet serial day number"""
  return epoch / SECONDS_PER_DAY + EXCEL_EPOCH_DAYS


def is_sheets(url):
  try:
    host = urlsplit(url or '').hostname or ''
  except ValueError:
    return False
  return SHEETS_HOST in host.lower()


def _strftime(t):
  return time.strftime(TIME_FORMAT, time.localtime(t))


#
# Validation
#

def check_url(session, url):
  try:
    parts = urlsplit(url)
    host = parts.hostname
  except ValueError:
    return (False, 'invalid log URL')
  if parts.scheme not in ('http', 'https') or not host:
    return (False, 'invalid log URL')
  return (True, None)


def check_interval(session, interval):
  interval = str(interval).strip()
  if not re.fullmatch(r'\d+', interval) or \
     not (MIN_LOG_TIME <= int(interval) <= MAX_LOG_TIME):
    session.reset_interval()
    return (False, f"Log interval must be between {MIN_LOG_TIME}-{MAX_LOG_TIME} minutes")
  return (True, None)


def check_email(session, email):
  if not EMAIL_REGEX.fullmatch(email.strip()):
    return (False, 'invalid email address')
  return (True, None)


def sheets_only(session):
  return is_sheets(session.url)


# checks run in this order; 'applies' decides whether the field is needed at all
Rule = namedtuple('Rule', ['field', 'check', 'applies'])

RULES = (
  Rule('url', check_url, None),
  Rule('interval', check_interval, None),
  Rule('beer', None, None),
  Rule('email', check_email, sheets_only),
)


#
# Averaging and formatting
#

def average(data, since):
  """
  Average SG, temp and RSSI of the samples captured after 'since'.

  The sums only include the newer samples but are divided by the count of
  every buffered sample.
  """
  num = len(data)
  sg = temp = rssi = Decimal(0)
  for sample in data:
    if sample.captured_at is None or sample.captured_at <= since:
      continue
    sg += sample.sg
    temp += sample.temp
    rssi += sample.rssi
  return (sg / num, temp / num, rssi / num)


def format_record(epoch, temp, sg, beer, color, comment):
  return {'Timepoint': "{:f}".format(excel_time(epoch)),
          'Temp': "{:.1f}".format(temp),
          'SG': "{:.4f}".format(sg),
          'Beer': beer,
          'Color': color.upper(),
          'Comment': "{:.1f}".format(comment)}


#
# Delivery
#

def send_point(http, url, body):
  """
  POST one data point.  Returns the decoded JSON reply ({} if there was
  none) on success, None on failure.
  """
  try:
    resp = http.post(url, data=body,
                     headers={'Content-Type': FORM_CONTENT_TYPE},
                     timeout=POST_TIMEOUT_S,
                     allow_redirects=True)
  except requests.exceptions.ConnectionError as e:
    event_log(f"Error logging data: connection error\n{e}", logging.ERROR)
    return None
  except requests.exceptions.Timeout:
    event_log("Error logging data: timeout", logging.ERROR)
    return None
  except requests.exceptions.RequestException as e:
    event_log(f"Error logging data: {e}", logging.ERROR)
    return None

  status = f"{resp.status_code} {resp.reason}"
  if not resp.ok:
    event_log(f"Error logging data: {status}\n\n{resp.text}", logging.ERROR)
    return None

  event_log(f"Log success: {status}")
  try:
    data = resp.json()
  except ValueError:
    logger.warning(f"Log reply is not JSON: {resp.text[:200]!r}")
    return {}
  return data if isinstance(data, dict) else {}


#
# Export
#

def export_csv(records, path):
  """
  Write the log points to a CSV file.  The field names of the first point
  make the header, then every point (the first one too) is a row.
  """
  if not records:
    event_log(f"Error: no data to export to {path}!", logging.ERROR)
    return False

  with open(path, 'w', newline='', encoding='utf-8') as f:
    writer = csv.writer(f)
    writer.writerow(records[0].keys())
    for record in records:
      writer.writerow(record.values())
  event_log(f"Exported {len(records)} log points to {path}")
  return True


class LogSession:
  """
  Logging state of one Tilt color.  The log parameters are read from and
  written back to the color's config section.
  """

  def __init__(self, color, config, http=None, clock=time.time):
    self.color = color
    self._config = config
    self._http = http if http is not None else requests.Session()
    self._clock = clock
    self._flushing = False
    self.data = []
    self.last_logged = 0
    self.records = []
    self.timer = None
    self.doclongurl = None

  @property
  def name(self):
    return f"{self.color.upper()} Tilt"

  @property
  def url(self):
    return self._config.get('url', '')

  @property
  def beer(self):
    return self._config.get('beer', '')

  @beer.setter
  def beer(self, value):
    self._config['beer'] = value
    self._config['updated'] = 'True'

  @property
  def email(self):
    return self._config.get('email', '')

  @property
  def interval(self):
    return int(self._config.get('interval', MIN_LOG_TIME))

  def reset_interval(self):
    self._config['interval'] = str(MIN_LOG_TIME)
    self._config['updated'] = 'True'

  @property
  def active(self):
    return self.timer is not None

  def validate(self):
    """Check every log parameter; returns the list of problems found"""
    errors = []
    for rule in RULES:
      if rule.applies is not None and not rule.applies(self):
        continue
      value = self._config.get(rule.field, '')
      if value is None or str(value).strip() == '':
        errors.append(f"must provide log {rule.field}")
        if rule.field == 'interval':
          self.reset_interval()
        continue
      if rule.check is None:
        continue
      (ok, reason) = rule.check(self, value)
      if not ok:
        errors.append(reason)
    return errors

  def add_sample(self, sample):
    if self.active:
      self.data.append(sample)

  def start(self, scheduler, latest=None, now=None):
    """
    Validate the parameters, log a first point right away and schedule the
    rest.  'latest' is the newest reading of this Tilt; it makes sure the
    first point has something to average.
    """
    errors = self.validate()
    if errors:
      for error in errors:
        event_log(f"{self.name}: Error: {error}!", logging.ERROR)
      return False

    if self.active:
      logger.info(f"{self.name} log already running")
      return True

    now = self._clock() if now is None else now
    event_log(f"{self.name}: starting log, standby...")
    if latest is not None:
      self.data.append(latest._replace(captured_at=now))

    if not self.flush(now, init=True):
      event_log(f"{self.name}: Error starting log: see event log!", logging.ERROR)
      return False

    self.timer = scheduler.repeat(self.interval * 60, self.flush)
    self.log_state()
    return True

  def stop(self):
    if self.timer is None:
      return
    self.timer.cancel()
    self.timer = None
    self.data = []
    self.log_state()

  def log_state(self):
    state = 'ACTIVE' if self.active else 'INACTIVE'
    status = f"{self.name} logging is now {state}"
    if self.active:
      status += f"\ninterval: {self.interval}"
      status += f"\nURL: {self.url}"
    event_log(status)

  def flush(self, now=None, init=False):
    """Average and send the data collected since the last log point"""
    if self._flushing:
      logger.warning(f"{self.name}: log point already in progress")
      return False
    self._flushing = True
    try:
      return self._flush(self._clock() if now is None else now, init)
    finally:
      self._flushing = False

  def _flush(self, now, init):
    last_logged = self.last_logged
    self.last_logged = now

    if not self.data:
      event_log(f"{self.name}: no data found, not logging!")
      return False

    newest = self.data[-1].captured_at
    if newest is None or newest <= last_logged:
      event_log(f"{self.name}: no new data since {_strftime(last_logged)}, not logging!")
      return False

    # only the averages are kept, never every point
    data = self.data
    self.data = []
    (sg_avg, temp_avg, rssi_avg) = average(data, last_logged)

    record = format_record(now, temp_avg, sg_avg, self.beer, self.color, rssi_avg)
    self.records.append(record)

    body = dict(record)
    if init and is_sheets(self.url):
      # an email in place of the RSSI tells the sheet script to start a new sheet
      body['Comment'] = self.email

    event_log("Attempting to POST data point"
              f"\nAverage of {len(data)} points"
              "\nHTML body:"
              "\n  " + "&\n  ".join(f"{k}={v}" for (k, v) in body.items()))

    reply = send_point(self._http, self.url, body)
    if reply is None:
      return False

    beer = reply.get('beername')
    if beer is not None and beer != self.beer:
      event_log(f"{self.name}: log beer name is now '{beer}'")
      self.beer = beer

    doc = reply.get('doclongurl')
    if doc is not None and doc != self.doclongurl:
      event_log(f"{self.name}: log sheet\n{doc}")
      self.doclongurl = doc
    return True
