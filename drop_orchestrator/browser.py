import logging
import asyncio
import os
import sys
import time

from playwright.async_api import async_playwright, Error as PlaywrightError
from playwright_stealth import Stealth, ALL_EVASIONS_DISABLED_KWARGS

from .config import (
	BROWSER_CHANNEL,
	DEFAULT_HEADLESS,
	EXIT_EVENT,
	FORCE_USER_AGENT,
	STEALTH_PROFILE,
	TWITCH_BASE_URL,
	TWITCH_INVENTORY_URL,
	TWITCH_LOGIN_URL,
	USER_DATA_DIR,
)

IS_MAC = sys.platform == "darwin"

COOKIE_ACCEPT_SELECTOR = '#onetrust-accept-btn-handler'
MATURE_ACCEPT_SELECTOR = 'button[data-a-target="player-overlay-mature-accept"]'
PLAY_PAUSE_SELECTOR = 'button[data-a-target="player-play-pause-button"]'
VOLUME_SLIDER_SELECTOR = '[data-a-target="player-volume-slider"]'
MUTE_BUTTON_SELECTOR = 'button[data-a-target="player-mute-unmute-button"]'
SETTINGS_BUTTON_SELECTOR = 'button[data-a-target="player-settings-button"]'
QUALITY_MENU_SELECTORS = [
	'div[role="menu"] [data-a-target="player-settings-menu-item-quality"]',
	'div[role="menu"] [data-a-target="player-settings-quality"]',
	'div[role="menu"] [role="menuitem"]:has-text("Quality")',
]
AVATAR_SELECTOR = 'img[alt="User Avatar"]'
USERNAME_INPUT_SELECTOR = 'input[autocomplete="username"]'
PASSWORD_INPUT_SELECTOR = 'input[autocomplete="current-password"]'
SUBMIT_SELECTOR = 'button[type="submit"]'
TWO_FACTOR_INPUT_SELECTOR = 'input[autocomplete="one-time-code"]'

# Picks the lowest quality entry in the open player settings menu
PICK_LOWEST_QUALITY_JS = r"""
() => {
  const menu = document.querySelector('div[role="menu"]');
  if (!menu) return false;
  const candidates = Array.from(menu.querySelectorAll('[role="menuitemradio"], input[type="radio"], label'));
  if (!candidates.length) return false;
  const score = (el) => {
	const t = (el.innerText || el.textContent || '').toLowerCase();
	if (t.includes('audio only')) return 0;
	const m = t.match(/(\d+)p/);
	return m ? parseInt(m[1], 10) : 9999;
  };
  let bestEl = null;
  let best = 9999;
  for (const el of candidates) {
	const s = score(el);
	if (s < best) { best = s; bestEl = el; }
  }
  if (!bestEl) return false;
  (bestEl.closest('[role="menuitemradio"]') || bestEl).click();
  return true;
}
"""

LAUNCH_ARGS = [
	"--disable-extensions",
	"--disable-features=BlockThirdPartyCookies,CookieDeprecationMessages,TranslateUI",
	"--disable-background-timer-throttling",
	"--disable-backgrounding-occluded-windows",
	"--disable-renderer-backgrounding",
	"--disable-background-networking",
	"--force-device-scale-factor=1",
	"--disable-hang-monitor",
	"--disable-prompt-on-repost",
	"--disable-sync",
	"--disable-translate",
	"--disable-component-extensions-with-background-pages",
	"--no-first-run",
	"--no-default-browser-check",
]


class SurfaceUnavailable(RuntimeError):
	"""The browser cannot provide a page at all (launch or new tab failed)."""


def _ms(seconds: float) -> float:
	return max(0.0, float(seconds)) * 1000


async def wait_with_exit(task: asyncio.Task):
	while True:
		done, _ = await asyncio.wait({task}, timeout=0.3)
		if task in done:
			return await task
		if EXIT_EVENT.is_set():
			task.cancel()
			raise asyncio.CancelledError("Exit requested")


async def goto_with_exit(page, url: str, timeout: float = 60, wait_until: str = "domcontentloaded"):
	t = asyncio.create_task(page.goto(url, timeout=_ms(timeout), wait_until=wait_until))
	return await wait_with_exit(t)


async def apply_stealth_to_context(context, profile: str):
	if profile == "off":
		logging.info("Stealth: OFF")
		return
	if profile == "minimal":
		logging.info("Stealth: MINIMAL (navigator.webdriver only)")
		stealth = Stealth(init_scripts_only=True, **{**ALL_EVASIONS_DISABLED_KWARGS, "navigator_webdriver": True})
	else:
		logging.info("Stealth: FULL")
		stealth = Stealth(init_scripts_only=True)
	await stealth.apply_stealth_async(context)


def _find_macos_chrome_executable():
	candidates = [
		"/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
		os.path.expanduser("~/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"),
		"/Applications/Google Chrome for Testing.app/Contents/MacOS/Google Chrome for Testing",
	]
	for path in candidates:
		if os.path.exists(path):
			return path
	return None


class BrowserSurface:
	"""Playwright-backed automation surface.

	One persistent Chromium context holds the login; every watch session is
	a tab (the handle is the Playwright ``Page``). Primitives take timeouts
	in seconds and report page-level problems as False/None/[] instead of
	raising. Only ``start`` and ``open_session`` raise, with
	``SurfaceUnavailable``.
	"""

	def __init__(self, user_data_dir: str = USER_DATA_DIR, headless: bool = DEFAULT_HEADLESS, compat_mode: bool = False, navigation_timeout: float = 60):
		self.user_data_dir = user_data_dir
		self.headless = headless
		self.compat_mode = compat_mode
		self.navigation_timeout = navigation_timeout
		self._playwright = None
		self._context = None
		self._home_page = None
		self._pages = set()
		self._new_page_callbacks = []

	@property
	def open_count(self) -> int:
		return len(self._pages)

	@property
	def started(self) -> bool:
		return self._context is not None

	def stream_url(self, streamer_name: str) -> str:
		return f"{TWITCH_BASE_URL}/{streamer_name.strip().lower()}"

	def on_new_page(self, callback) -> None:
		self._new_page_callbacks.append(callback)

	async def start(self) -> None:
		if self._context is not None:
			return
		try:
			self._playwright = await async_playwright().start()
			self._context = await self._launch_context()
		except Exception as e:
			await self.stop()
			raise SurfaceUnavailable(f"Browser launch failed: {e}") from e
		await apply_stealth_to_context(self._context, profile=("off" if self.compat_mode else STEALTH_PROFILE))
		self._context.on("page", self._on_context_page)
		self._home_page = self._context.pages[0] if self._context.pages else await self._context.new_page()
		logging.info(f"Browser launched. Mode: {'COMPAT' if self.compat_mode else 'NORMAL'}, headless={self.headless}")

	async def _launch_context(self):
		args = list(LAUNCH_ARGS)
		ignore_default_args = None
		if not self.compat_mode:
			args.append("--disable-blink-features=AutomationControlled")
			ignore_default_args = ["--enable-automation"]
		options = dict(
			headless=self.headless,
			slow_mo=50,
			ignore_default_args=ignore_default_args,
			args=args,
			user_agent=FORCE_USER_AGENT if FORCE_USER_AGENT else None,
			viewport={"width": 1366, "height": 768},
			locale="en-US",
		)
		chromium = self._playwright.chromium
		if IS_MAC:
			chrome_exec = _find_macos_chrome_executable()
			if not chrome_exec:
				raise RuntimeError("Google Chrome is required on macOS. Please install it from https://www.google.com/chrome/")
			return await chromium.launch_persistent_context(self.user_data_dir, executable_path=chrome_exec, **options)
		try:
			return await chromium.launch_persistent_context(self.user_data_dir, channel=BROWSER_CHANNEL, **options)
		except PlaywrightError as e:
			logging.warning(f"Primary browser channel '{BROWSER_CHANNEL}' failed ({e}). Falling back to default Chromium.")
			return await chromium.launch_persistent_context(self.user_data_dir, **options)

	async def stop(self) -> None:
		for page in list(self._pages):
			await self.close_session(page)
		if self._context is not None:
			try:
				await self._context.close()
			except PlaywrightError as e:
				logging.debug(f"Closing browser context failed: {e}")
			self._context = None
			self._home_page = None
			logging.info("Closing browser.")
		if self._playwright is not None:
			try:
				await self._playwright.stop()
			except Exception as e:
				logging.debug(f"Stopping Playwright failed: {e}")
			self._playwright = None

	async def _on_context_page(self, page) -> None:
		# Tabs we open ourselves have no opener; only site-initiated tabs are reported
		try:
			opener = await page.opener()
		except PlaywrightError:
			return
		if opener is None:
			return
		for cb in list(self._new_page_callbacks):
			try:
				cb(page.url)
			except Exception as e:
				logging.debug(f"New-page listener failed: {e}")

	# --- Session primitives ---

	async def open_session(self, url: str):
		if self._context is None:
			raise SurfaceUnavailable("Browser is not running")
		try:
			page = await self._context.new_page()
		except PlaywrightError as e:
			raise SurfaceUnavailable(f"Could not open a tab: {e}") from e
		self._pages.add(page)
		page.on("pageerror", lambda err: logging.debug(f"PageError: {err}"))
		try:
			await goto_with_exit(page, url, timeout=self.navigation_timeout)
		except asyncio.CancelledError:
			await self.close_session(page)
			raise
		except PlaywrightError as e:
			await self.close_session(page)
			raise SurfaceUnavailable(f"Navigation to {url} failed: {e}") from e
		return page

	async def close_session(self, handle) -> None:
		if handle not in self._pages:
			return
		self._pages.discard(handle)
		try:
			await handle.close()
		except PlaywrightError as e:
			logging.debug(f"Closing tab failed: {e}")

	async def wait_for(self, handle, selector: str, timeout: float) -> bool:
		try:
			await handle.wait_for_selector(selector, timeout=_ms(timeout), state="visible")
			return True
		except PlaywrightError:
			return False

	async def click(self, handle, selector: str, timeout: float) -> bool:
		try:
			await handle.locator(selector).first.click(timeout=_ms(timeout))
			return True
		except PlaywrightError as e:
			logging.debug(f"Click on {selector} failed: {e}")
			return False

	async def read_text(self, handle, selector: str, timeout: float = 2.0) -> str | None:
		try:
			locator = handle.locator(selector)
			if await locator.count() == 0:
				return None
			return await locator.first.text_content(timeout=_ms(timeout))
		except PlaywrightError:
			return None

	async def read_all_texts(self, handle, selector: str) -> list[str]:
		try:
			return await handle.locator(selector).all_text_contents()
		except PlaywrightError:
			return []

	# --- Per-session setup (best effort) ---

	async def accept_cookies(self, handle, timeout: float = 2.0) -> bool:
		try:
			btn = await handle.query_selector(COOKIE_ACCEPT_SELECTOR)
			if btn:
				await btn.click(timeout=_ms(timeout))
				logging.info("Accepted OneTrust cookies banner")
				await asyncio.sleep(0.5)
				return True
		except PlaywrightError:
			pass
		return False

	async def dismiss_mature_warning(self, handle, timeout: float = 2.0) -> bool:
		if not await self.wait_for(handle, MATURE_ACCEPT_SELECTOR, min(timeout, 3.0)):
			return False
		return await self.click(handle, MATURE_ACCEPT_SELECTOR, timeout)

	async def ensure_muted(self, handle, timeout: float = 10.0) -> bool:
		try:
			await handle.wait_for_selector(PLAY_PAUSE_SELECTOR, timeout=_ms(timeout))
			label = await handle.get_attribute(PLAY_PAUSE_SELECTOR, 'aria-label')
			if label and 'Play' in label:
				await handle.click(PLAY_PAUSE_SELECTOR)
				await asyncio.sleep(1)
		except PlaywrightError:
			pass
		try:
			val = await handle.get_attribute(VOLUME_SLIDER_SELECTOR, 'aria-valuenow', timeout=_ms(timeout))
			if val is None or val != '0':
				await handle.click(MUTE_BUTTON_SELECTOR, timeout=_ms(timeout))
				await asyncio.sleep(0.2)
			return True
		except PlaywrightError:
			return False

	async def set_lowest_quality(self, handle, timeout: float = 10.0) -> bool:
		if not await self.click(handle, SETTINGS_BUTTON_SELECTOR, timeout):
			return False
		await asyncio.sleep(0.3)
		picked = False
		try:
			for sel in QUALITY_MENU_SELECTORS:
				btns = await handle.query_selector_all(sel)
				if btns:
					await btns[0].click()
					await asyncio.sleep(0.4)
					picked = bool(await handle.evaluate(PICK_LOWEST_QUALITY_JS))
					await asyncio.sleep(0.3)
					break
		except PlaywrightError as e:
			logging.debug(f"Quality selection failed: {e}")
		# Close settings menu
		await self.click(handle, SETTINGS_BUTTON_SELECTOR, timeout)
		return picked

	# --- Authentication ---

	async def login(self, username: str, password: str, on_two_factor=None, timeout: float = 300, two_factor_timeout: float = 300) -> bool:
		page = self._home_page
		if page is None:
			logging.error("Login requested before the browser started")
			return False
		try:
			logging.info("Navigating to Twitch login page...")
			await goto_with_exit(page, TWITCH_LOGIN_URL, timeout=self.navigation_timeout)
			await self.accept_cookies(page)
			await page.wait_for_selector(USERNAME_INPUT_SELECTOR, timeout=_ms(min(timeout, 30)))
			await page.fill(USERNAME_INPUT_SELECTOR, username)
			await page.fill(PASSWORD_INPUT_SELECTOR, password)
			await page.click(SUBMIT_SELECTOR)
		except PlaywrightError as e:
			logging.error(f"Login form failed: {e}")
			return False

		if await self.wait_for(page, TWO_FACTOR_INPUT_SELECTOR, 5):
			logging.info("2FA detected - waiting for user to enter code...")
			if on_two_factor:
				on_two_factor()
			deadline = time.monotonic() + two_factor_timeout
			while '/login' in page.url:
				if time.monotonic() >= deadline or EXIT_EVENT.is_set():
					logging.warning("2FA timeout - user did not complete authentication")
					return False
				await asyncio.sleep(1)
			logging.info("2FA completed")

		return await self.wait_until_logged_in(timeout=timeout)

	async def wait_until_logged_in(self, timeout: float = 300) -> bool:
		"""Poll the inventory page in a background tab until the user avatar shows up.

		Gives up after ``timeout`` seconds or when the app is exiting.
		"""
		if self._context is None:
			return False
		deadline = time.monotonic() + timeout
		poll_page = None
		try:
			poll_page = await self._context.new_page()
			while not EXIT_EVENT.is_set():
				try:
					await goto_with_exit(poll_page, TWITCH_INVENTORY_URL, timeout=self.navigation_timeout)
					await self.accept_cookies(poll_page)
					await poll_page.wait_for_timeout(500)
					if await poll_page.query_selector(AVATAR_SELECTOR):
						logging.info("Detected user avatar; login complete.")
						return True
					logging.info("Not logged in yet; still waiting…")
				except PlaywrightError as e:
					logging.debug(f"Login poll failed: {e}")
				if time.monotonic() >= deadline:
					logging.warning(f"Not logged in after {timeout:g}s")
					return False
				await asyncio.sleep(5)
			return False
		except PlaywrightError as e:
			logging.error(f"Could not open login poll tab: {e}")
			return False
		finally:
			if poll_page is not None:
				try:
					await poll_page.close()
				except PlaywrightError:
					pass

	async def read_auth_token(self) -> str | None:
		if self._context is None:
			return None
		try:
			for cookie in await self._context.cookies(TWITCH_BASE_URL):
				if cookie.get('name') == 'auth-token':
					return cookie.get('value')
		except PlaywrightError as e:
			logging.debug(f"Reading auth cookie failed: {e}")
		return None
