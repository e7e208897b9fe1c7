import time
import heapq
import logging
import itertools

"""
Cooperative scheduler

Repeating callbacks kept on a min-heap of next fire times.  Everything that
touches Tilt state runs from run_pending() on the main thread, so none of
it needs locking.
"""

logger = logging.getLogger('tiltmonitor.scheduler')

# Time between passes on main event loop
MAIN_LOOP_WAIT_MS = 50


class Timer:

  def __init__(self, interval, callback, args):
    self.interval = interval
    self.callback = callback
    self.args = args
    self.cancelled = False

  def cancel(self):
    self.cancelled = True


class Scheduler:

  def __init__(self, clock=time.time):
    self._clock = clock
    self._heap = []
    self._seq = itertools.count()
    self._run = True

  def repeat(self, interval, callback, *args, first=None):
    """
    Call callback(*args) every interval seconds; the first call is after
    one interval unless 'first' gives another delay.
    """
    if interval <= 0:
      raise ValueError(f"interval must be positive, got {interval}")
    timer = Timer(interval, callback, args)
    delay = interval if first is None else first
    heapq.heappush(self._heap, (self._clock() + delay, next(self._seq), timer))
    return timer

  def __len__(self):
    return sum(1 for (_, _, t) in self._heap if not t.cancelled)

  def run_pending(self, now=None):
    """Fire every callback that is due; returns the number fired"""
    now = self._clock() if now is None else now
    fired = 0
    while self._heap and self._heap[0][0] <= now:
      (due, _, timer) = heapq.heappop(self._heap)
      if timer.cancelled:
        continue
      try:
        timer.callback(*timer.args)
      except Exception:
        logger.exception(f"Scheduled callback {timer.callback!r} failed")
      fired += 1
      if not timer.cancelled:
        # fixed rate; missed ticks are dropped, not caught up
        next_due = due + timer.interval
        if next_due <= now:
          next_due = now + timer.interval
        heapq.heappush(self._heap, (next_due, next(self._seq), timer))
    return fired

  def run(self):
    while self._run:
      last_time = self._clock()
      self.run_pending(last_time)
      while self._run and (self._clock() - last_time) < (MAIN_LOOP_WAIT_MS / 1000.0):
        time.sleep(0.005)

  def end(self):
    self._run = False
