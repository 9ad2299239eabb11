import logging
import asyncio

MAX_CONSECUTIVE_FAILURES = 5


class PeriodicTask:
	"""A named recurring task: each tick runs to completion, then the task
	sleeps for the current interval (interruptible by stop()).

	Once stop() is requested no further tick starts; a tick already in
	progress may drain for up to ``drain_timeout`` seconds before it is
	cancelled.
	"""

	def __init__(self, name: str, interval_provider):
		self.name = name
		self._interval_provider = interval_provider
		self._task: asyncio.Task | None = None
		self._stop_event: asyncio.Event | None = None
		self.tick_count = 0
		self.consecutive_failures = 0

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	@property
	def stopping(self) -> bool:
		return self._stop_event is not None and self._stop_event.is_set()

	def interval(self) -> float:
		try:
			return max(0.01, float(self._interval_provider()))
		except Exception:
			return 5.0

	async def tick(self) -> None:
		raise NotImplementedError

	def start(self) -> None:
		if self.running:
			return
		self._stop_event = asyncio.Event()
		self._task = asyncio.create_task(self._run(self._stop_event), name=self.name)

	async def _run(self, stop_event: asyncio.Event):
		logging.info(f"{self.name} started (every {self.interval():g}s)")
		try:
			while not stop_event.is_set():
				try:
					await self.tick()
					self.tick_count += 1
					self.consecutive_failures = 0
				except asyncio.CancelledError:
					raise
				except Exception as e:
					self.consecutive_failures += 1
					logging.warning(f"{self.name} tick failed: {e}")
					if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
						logging.error(f"{self.name} failed {self.consecutive_failures} times in a row")
						# Reset failure counter to avoid spam
						self.consecutive_failures = 0
				if stop_event.is_set():
					break
				try:
					await asyncio.wait_for(stop_event.wait(), timeout=self.interval())
				except asyncio.TimeoutError:
					pass
		finally:
			logging.info(f"{self.name} stopped")

	async def stop(self, drain_timeout: float = 15.0) -> None:
		task = self._task
		if task is None:
			return
		self._stop_event.set()
		self._task = None
		if task is asyncio.current_task() or task.done():
			return
		try:
			await asyncio.wait_for(asyncio.shield(task), timeout=drain_timeout)
		except asyncio.TimeoutError:
			logging.warning(f"{self.name} did not drain within {drain_timeout}s; cancelling")
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass
