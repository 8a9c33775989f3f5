#!/usr/bin/env python3
"""
CoinOverlay - Always-on-top Cryptocurrency Price Overlay
A small frameless desktop widget that keeps an eye on CoinGecko prices

Version: 1.0.0
License: MIT

Features:
- Coin x currency price grid with 1h / 24h / 7d percent changes
- Periodic refresh with one markets request per currency
- Price alarms ("coin,currency,threshold") with tray notification and beep
- Historical price line chart for the first coin/currency pair
- Draggable overlay whose position is remembered between runs
- System tray menu (show/hide/settings/quit) with a right-click fallback
- Persistent JSON settings and rotating log file

Requirements: Python 3.8+ with tkinter
Install: pip install -e .
Usage: coin-overlay [--debug]
"""

import sys
import os
import json
import math
import time
import threading
import logging
import argparse
import traceback
from logging.handlers import RotatingFileHandler
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import tkinter as tk
from tkinter import ttk
import requests
import matplotlib
matplotlib.use('TkAgg')  # Set backend before importing the Tk canvas
from matplotlib.backends.backend_tkagg import FigureCanvasTkAgg
from matplotlib.figure import Figure
import matplotlib.dates as mdates
from PIL import Image, ImageDraw

__version__ = "1.0.0"
APP_NAME = "CoinOverlay"

logger = logging.getLogger(APP_NAME)

# Optional desktop integrations
NOTIFICATIONS_AVAILABLE = False
SYSTEM_TRAY_AVAILABLE = False

try:
    from plyer import notification
    NOTIFICATIONS_AVAILABLE = True
except ImportError:
    notification = None

try:
    import pystray
    from pystray import MenuItem as item
    SYSTEM_TRAY_AVAILABLE = True
except Exception as e:  # pystray raises backend errors on headless systems
    pystray = None
    item = None
    logger.debug(f"pystray unavailable: {e}")


COINGECKO_BASE_URL = 'https://api.coingecko.com/api/v3'
REQUEST_TIMEOUT = 10

DEFAULT_COIN = 'dogecoin'
DEFAULT_CURRENCY = 'usd'
DEFAULT_REFRESH_MS = 30000
MIN_REFRESH_MS = 10000
MAX_REFRESH_MS = 3600000
REFRESH_STEP_MS = 5000
POSITION_LIMIT = 10000
ALARM_NOTIFICATION_SECONDS = 7

COLORS = {
    'overlay': '#101010', 'text': '#FFFFFF', 'hint': '#B3B3B3',
    'primary': '#3B82F6', 'secondary': '#6B7280', 'success': '#10B981',
    'warning': '#F59E0B', 'error': '#EF4444', 'surface': '#1E293B',
}
LABEL_FONT = ('Segoe UI', 11, 'bold')
HINT_FONT = ('Segoe UI', 8)


def app_dir() -> Path:
    """Directory holding settings and logs ($COINOVERLAY_HOME or ~/.coinoverlay)"""
    override = os.environ.get('COINOVERLAY_HOME')
    return Path(override) if override else Path.home() / '.coinoverlay'


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach a rotating file handler and a console handler to the app logger"""
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    logger.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
               for h in logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    try:
        log_dir = app_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
            file_handler = RotatingFileHandler(log_dir / 'coinoverlay.log', maxBytes=512_000,
                                               backupCount=3, encoding='utf-8')
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"Could not set up log file: {e}")

    return logger


# Value types
@dataclass
class Alarm:
    """Notify when the price of coin in currency reaches threshold"""
    coin: str
    currency: str
    threshold: float

    def to_line(self) -> str:
        return f"{self.coin},{self.currency},{format_threshold(self.threshold)}"


@dataclass
class AlarmHit:
    alarm: Alarm
    price: float

    @property
    def key(self) -> str:
        return f"{self.alarm.coin}/{self.alarm.currency}/{self.alarm.threshold}"

    @property
    def message(self) -> str:
        return (f"{self.alarm.coin} {self.alarm.currency.upper()} reached "
                f"{format_number(self.price)} (threshold {format_number(self.alarm.threshold)})")


@dataclass
class MarketQuote:
    """One coin's row from the markets endpoint, in one currency"""
    coin: str
    currency: str
    price: Optional[float]
    change_1h: Optional[float] = None
    change_24h: Optional[float] = None
    change_7d: Optional[float] = None

    @classmethod
    def from_market_row(cls, coin: str, currency: str, row: dict) -> 'MarketQuote':
        return cls(
            coin=coin,
            currency=currency,
            price=safe_number(row, 'current_price'),
            change_1h=safe_number(row, 'price_change_percentage_1h_in_currency'),
            change_24h=safe_number(row, 'price_change_percentage_24h_in_currency'),
            change_7d=safe_number(row, 'price_change_percentage_7d_in_currency'),
        )

    def slot_text(self) -> str:
        label = f"{self.coin} ({self.currency.upper()})"
        if self.price is None:
            return f"{label}: -"
        return (f"{label}\nPrice: {format_number(self.price)}"
                f"\n1h: {format_percent(self.change_1h)}"
                f"\n24h: {format_percent(self.change_24h)}"
                f"\n7d: {format_percent(self.change_7d)}")


@dataclass
class ChartPoint:
    timestamp_ms: int
    price: float

    @property
    def when(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000.0)


class ChartRange(Enum):
    """Chart history length in days"""
    ONE_DAY = 1
    TWO_DAYS = 2
    SEVEN_DAYS = 7
    THIRTY_DAYS = 30

    @property
    def label(self) -> str:
        return f"{self.value}D"


# Parsing and formatting helpers
def parse_list(text: str) -> List[str]:
    """Split comma separated ids, trimming and lower-casing, dropping empties"""
    return [part.strip().lower() for part in (text or '').split(',') if part.strip()]


def parse_alarm_lines(lines: Iterable[str]) -> List[Alarm]:
    """Parse "coin,currency,threshold" lines, silently skipping malformed ones"""
    alarms = []
    for line in lines:
        parts = [part for part in line.split(',') if part]
        if len(parts) < 3:
            continue
        coin = parts[0].strip().lower()
        currency = parts[1].strip().lower()
        try:
            threshold = float(parts[2].strip())
        except ValueError:
            continue
        if not coin or not currency or not math.isfinite(threshold):
            continue
        alarms.append(Alarm(coin, currency, threshold))
    return alarms


def alarm_lines(alarms: Iterable[Alarm]) -> List[str]:
    return [alarm.to_line() for alarm in alarms]


def evaluate_alarms(alarms: Iterable[Alarm], quote: MarketQuote) -> List[AlarmHit]:
    """Alarms for the quote's pair whose threshold the price has reached"""
    if quote.price is None:
        return []
    return [AlarmHit(alarm, quote.price) for alarm in alarms
            if alarm.coin == quote.coin and alarm.currency == quote.currency
            and quote.price >= alarm.threshold]


def safe_number(obj: dict, key: str) -> Optional[float]:
    """Numeric field or None when missing, null or not a number"""
    value = obj.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def format_number(value: float) -> str:
    return f"{value:g}"


def format_threshold(value: float) -> str:
    """Shortest text that parses back to the same float"""
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


def format_percent(pct: Optional[float]) -> str:
    if pct is None or math.isnan(pct):
        return "N/A"
    arrow = "↑" if pct >= 0.0 else "↓"
    return f"{abs(pct):.2f}% {arrow}"


def format_simple_prices(payload: Any, coins: Sequence[str], currencies: Sequence[str]) -> str:
    """One "coin: price CUR" line per pair from a simple price response"""
    lines = []
    data = payload if isinstance(payload, dict) else {}
    for coin in coins:
        row = data.get(coin)
        for currency in currencies:
            price = safe_number(row, currency) if isinstance(row, dict) else None
            shown = format_number(price) if price is not None else "N/A"
            lines.append(f"{coin}: {shown} {currency.upper()}")
    return "\n".join(lines)


def chart_bounds(prices: Sequence[float]) -> Tuple[float, float]:
    """Y axis range for a price series, widening a flat series"""
    low, high = min(prices), max(prices)
    if math.isclose(low, high):
        if low == 0:
            return -1.0, 1.0
        low, high = low * 0.999, high * 1.001
        if low > high:
            low, high = high, low
    return low, high


def parse_market_chart(payload: Any) -> List[ChartPoint]:
    if not isinstance(payload, dict) or not isinstance(payload.get('prices'), list):
        return []
    points = []
    for entry in payload['prices']:
        if not isinstance(entry, (list, tuple)) or len(entry) < 2:
            continue
        try:
            points.append(ChartPoint(int(float(entry[0])), float(entry[1])))
        except (TypeError, ValueError):
            continue
    return points


# CoinGecko endpoints
def simple_price_url(coin_ids: Sequence[str], currencies: Sequence[str],
                     base_url: str = COINGECKO_BASE_URL) -> str:
    return f"{base_url}/simple/price?ids={','.join(coin_ids)}&vs_currencies={','.join(currencies)}"


def markets_url(currency: str, coin_ids: Sequence[str], base_url: str = COINGECKO_BASE_URL) -> str:
    return (f"{base_url}/coins/markets?vs_currency={currency}&ids={','.join(coin_ids)}"
            f"&price_change_percentage=1h,24h,7d")


def market_chart_url(coin_id: str, currency: str, days: int,
                     base_url: str = COINGECKO_BASE_URL) -> str:
    return f"{base_url}/coins/{coin_id}/market_chart?vs_currency={currency}&days={days}"


class CoinGeckoClient:
    """Blocking CoinGecko client; call it from worker threads only"""

    def __init__(self, base_url: str = COINGECKO_BASE_URL, timeout: int = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': f'{APP_NAME}/{__version__}',
        })

    def _get_json(self, url: str) -> Any:
        """GET url; raises requests.RequestException, returns None for a non-JSON body"""
        logger.debug(f"GET {url}")
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"Response from {url} is not JSON: {e}")
            return None

    def fetch_markets(self, currency: str, coin_ids: Sequence[str]) -> Any:
        return self._get_json(markets_url(currency, coin_ids, self.base_url))

    def fetch_simple_price(self, coin_ids: Sequence[str], currencies: Sequence[str]) -> Any:
        return self._get_json(simple_price_url(coin_ids, currencies, self.base_url))

    def fetch_market_chart(self, coin_id: str, currency: str, days: int) -> List[ChartPoint]:
        return parse_market_chart(self._get_json(market_chart_url(coin_id, currency, days, self.base_url)))


class PriceGrid:
    """
    Text of every coin x currency slot, stored row-major.

    Replies name the currency they were requested for and are matched
    against the *current* coin and currency lists, so a reply that arrives
    after the user changed the configuration only ever writes to slots that
    still exist.
    """

    PLACEHOLDER = "..."

    def __init__(self, coins: Sequence[str] = (), currencies: Sequence[str] = ()):
        self.coins: List[str] = list(coins)
        self.currencies: List[str] = list(currencies)
        self.texts: List[str] = []
        self.rebuild()

    def configure(self, coins: Optional[Sequence[str]] = None,
                  currencies: Optional[Sequence[str]] = None) -> None:
        if coins is not None:
            self.coins = list(coins)
        if currencies is not None:
            self.currencies = list(currencies)
        self.rebuild()

    def rebuild(self) -> None:
        self.texts = [f"{coin} ({currency.upper()}): {self.PLACEHOLDER}"
                      for coin in self.coins for currency in self.currencies]

    def slot_index(self, coin_index: int, currency_index: int) -> int:
        return coin_index * len(self.currencies) + currency_index

    def currency_index(self, currency: str) -> int:
        try:
            return self.currencies.index(currency)
        except ValueError:
            return -1

    def _set(self, index: int, text: str) -> bool:
        if 0 <= index < len(self.texts):
            self.texts[index] = text
            return True
        return False

    def _fill_column(self, currency_index: int, text: str) -> None:
        for coin_index in range(len(self.coins)):
            self._set(self.slot_index(coin_index, currency_index), text)

    def apply_error(self, currency: str) -> bool:
        vi = self.currency_index(currency)
        if vi < 0:
            logger.debug(f"Dropping failed reply for removed currency {currency}")
            return False
        self._fill_column(vi, "Error")
        return True

    def apply_markets(self, currency: str, payload: Any,
                      alarms: Iterable[Alarm] = ()) -> List[AlarmHit]:
        """Fill the currency's column from a markets reply; returns fired alarms"""
        vi = self.currency_index(currency)
        if vi < 0:
            logger.debug(f"Dropping reply for removed currency {currency}")
            return []

        if not isinstance(payload, list):
            self._fill_column(vi, "N/A")
            return []

        rows = {}
        for entry in payload:
            if isinstance(entry, dict) and entry.get('id'):
                rows[str(entry['id'])] = entry

        alarms = list(alarms)
        hits = []
        for ci, coin in enumerate(self.coins):
            idx = self.slot_index(ci, vi)
            if not 0 <= idx < len(self.texts):
                continue
            if coin not in rows:
                self._set(idx, f"{coin} ({currency.upper()}): N/A")
                continue
            quote = MarketQuote.from_market_row(coin, currency, rows[coin])
            self._set(idx, quote.slot_text())
            hits.extend(evaluate_alarms(alarms, quote))
        return hits


class SettingsStore:
    """JSON backed key/value settings with validated merge over defaults"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else app_dir() / 'settings.json'
        self.settings = self.get_default_settings()

    @staticmethod
    def get_default_settings() -> dict:
        return {
            'coins': DEFAULT_COIN,
            'vs': DEFAULT_CURRENCY,
            'refresh': DEFAULT_REFRESH_MS,
            'posx': 20,
            'posy': 300,
            'alarms': '',
            'enable_notifications': True,
            'min_notification_interval': 6,
            'chart_days': ChartRange.SEVEN_DAYS.value,
        }

    def __getitem__(self, key: str) -> Any:
        return self.settings[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)

    def update(self, **values: Any) -> None:
        self._merge_settings(values)

    @property
    def coins(self) -> List[str]:
        return parse_list(self.settings['coins']) or [DEFAULT_COIN]

    @property
    def currencies(self) -> List[str]:
        return parse_list(self.settings['vs']) or [DEFAULT_CURRENCY]

    @property
    def alarms(self) -> List[Alarm]:
        return parse_alarm_lines(self.settings['alarms'].splitlines())

    def load(self) -> dict:
        """Load settings with comprehensive error handling"""
        if not self.path.exists():
            logger.info("No existing settings found, using defaults")
            return self.settings
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                saved_settings = json.load(f)
            if not isinstance(saved_settings, dict):
                raise ValueError("settings root is not an object")
            self._merge_settings(saved_settings)
            logger.info("Settings loaded successfully")
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Settings file corrupted, using defaults: {e}")
        except OSError as e:
            logger.warning(f"Could not load settings: {e}")
        return self.settings

    def _merge_settings(self, saved: dict) -> None:
        for key, value in saved.items():
            if key not in self.settings:
                continue
            try:
                self.settings[key] = self._validate(key, value)
            except (ValueError, TypeError):
                logger.warning(f"Invalid setting value for {key}: {value!r}")

    @staticmethod
    def _validate(key: str, value: Any) -> Any:
        if key == 'refresh':
            return min(MAX_REFRESH_MS, max(MIN_REFRESH_MS, int(value)))
        if key in ('posx', 'posy'):
            return min(POSITION_LIMIT, max(-POSITION_LIMIT, int(value)))
        if key in ('coins', 'vs', 'alarms'):
            if not isinstance(value, str):
                raise TypeError(f"{key} must be text")
            return value
        if key == 'enable_notifications':
            return bool(value)
        if key == 'min_notification_interval':
            return max(0, int(value))
        if key == 'chart_days':
            return ChartRange(int(value)).value
        return value

    def save(self) -> bool:
        """Save settings with atomic write"""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix('.tmp')
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(self.settings, f, indent=2, ensure_ascii=False)
            temp_path.replace(self.path)
            logger.debug("Settings saved successfully")
            return True
        except OSError as e:
            logger.error(f"Error saving settings: {e}")
            return False


def lighten_color(hex_color: str, factor: float = 1.2) -> str:
    try:
        hex_color = hex_color.lstrip('#')
        rgb = tuple(int(hex_color[i:i + 2], 16) for i in (0, 2, 4))
        new_rgb = tuple(min(255, int(c * factor)) for c in rgb)
        return f"#{new_rgb[0]:02x}{new_rgb[1]:02x}{new_rgb[2]:02x}"
    except ValueError:
        return '#' + hex_color


def create_button(parent, text: str, color: str, command, width: Optional[int] = None) -> tk.Button:
    """Flat colored button with hover highlight"""
    btn = tk.Button(parent, text=text, command=command, bg=color, fg='white',
                    font=('Segoe UI', 9, 'bold'), border=0, padx=12, pady=4,
                    cursor='hand2', activebackground=lighten_color(color, 0.8))
    if width:
        btn.config(width=width, padx=4)
    btn.bind("<Enter>", lambda e: btn.config(bg=lighten_color(color)))
    btn.bind("<Leave>", lambda e: btn.config(bg=color))
    return btn


class NotificationManager:
    """Desktop notifications with backend fallbacks and per-key debounce"""

    BACKEND_ORDER = ('tray', 'plyer', 'tk')

    def __init__(self, app_instance):
        self.app = app_instance
        self.last_notification_times: Dict[str, float] = {}
        self.stats = {
            'total_attempts': 0, 'success': 0, 'failed': 0, 'debounced': 0,
            'by_backend': {backend: 0 for backend in self.BACKEND_ORDER},
        }

    def available_backends(self) -> List[str]:
        backends = []
        tray = getattr(self.app, 'tray_manager', None)
        if tray is not None and tray.can_notify():
            backends.append('tray')
        if NOTIFICATIONS_AVAILABLE:
            backends.append('plyer')
        backends.append('tk')
        return backends

    def notify(self, title: str, message: str, duration: int = 5, *,
               key: Optional[str] = None, debounce_bypass: bool = False) -> bool:
        """
        Send a notification using the best available backend.

        Args:
            title: Notification title.
            message: Notification body.
            duration: Display duration in seconds.
            key: Debounce key; defaults to the title.
            debounce_bypass: Ignore the cooldown for this key.
        """
        self.stats['total_attempts'] += 1
        key = key or title

        if not debounce_bypass:
            cooldown = self.app.settings.get('min_notification_interval', 6)
            now = time.time()
            if now - self.last_notification_times.get(key, 0.0) < cooldown:
                logger.debug(f"Notification '{key}' debounced")
                self.stats['debounced'] += 1
                return False

        clean_title = str(title).strip()[:100]
        clean_message = str(message).strip()[:500]

        for backend in self.available_backends():
            try:
                if backend == 'tray':
                    sent = self.app.tray_manager.notify(clean_title, clean_message)
                elif backend == 'plyer':
                    notification.notify(title=clean_title, message=clean_message,
                                        app_name=APP_NAME, timeout=duration)
                    sent = True
                else:
                    self.app.safe_gui_call(lambda: self._create_tk_popup(clean_title, clean_message, duration))
                    sent = True
            except Exception as e:
                logger.warning(f"Notification backend '{backend}' failed: {e}")
                continue

            if sent:
                logger.debug(f"Notification sent via '{backend}'")
                self.stats['success'] += 1
                self.stats['by_backend'][backend] += 1
                self.last_notification_times[key] = time.time()
                return True

        self.stats['failed'] += 1
        logger.error("All notification backends failed.")
        return False

    def _create_tk_popup(self, title: str, message: str, duration: int) -> None:
        root = self.app.root
        popup = tk.Toplevel(root)
        popup.title(title)
        popup.configure(bg=COLORS['surface'])
        popup.attributes("-topmost", True)
        popup.geometry(f"320x90+{root.winfo_x()}+{max(0, root.winfo_y() - 110)}")

        label = tk.Label(popup, text=message, wraplength=300, justify='center',
                         bg=COLORS['surface'], fg=COLORS['text'])
        label.pack(padx=10, pady=10, expand=True, fill='both')

        popup.after(duration * 1000, popup.destroy)


class SafeSystemTray:
    """System tray icon running pystray on its own thread"""

    def __init__(self):
        self.available = SYSTEM_TRAY_AVAILABLE
        self.tray_icon = None
        self.tray_image = None
        self.running = False

    def create_icon(self) -> bool:
        if not self.available:
            return False
        try:
            size = 64
            image = Image.new('RGBA', (size, size), (0, 0, 0, 0))
            draw = ImageDraw.Draw(image)
            draw.ellipse([4, 4, size - 4, size - 4], fill='#F59E0B', outline='#B45309', width=2)
            # Rising price line across the coin
            draw.line([(14, 44), (26, 32), (36, 38), (50, 20)], fill='white', width=5)
            self.tray_image = image
            return True
        except Exception as e:
            logger.error(f"Tray icon creation failed: {e}")
            return False

    def setup_tray(self, app_instance) -> bool:
        """Build the tray menu; every action is marshalled onto the GUI thread"""
        if not self.available or not self.create_icon():
            return False

        def on_gui(func):
            return lambda: app_instance.safe_gui_call(func)

        try:
            self.tray_icon = pystray.Icon(
                "coin_overlay",
                self.tray_image,
                APP_NAME,
                menu=pystray.Menu(
                    item('Show Overlay', on_gui(app_instance.show_overlay), default=True),
                    item('Hide Overlay', on_gui(app_instance.hide_overlay)),
                    pystray.Menu.SEPARATOR,
                    item('Settings', on_gui(app_instance.show_settings)),
                    item('Refresh Now', on_gui(app_instance.refresh_now)),
                    item('Notify Prices', on_gui(app_instance.notify_prices)),
                    pystray.Menu.SEPARATOR,
                    item('Quit', on_gui(app_instance.quit_application)),
                )
            )
            logger.info("System tray configured successfully")
            return True
        except Exception as e:
            logger.error(f"System tray setup failed: {e}")
            self.tray_icon = None
            return False

    def can_notify(self) -> bool:
        return bool(self.tray_icon and self.running and getattr(self.tray_icon, 'HAS_NOTIFICATION', False))

    def notify(self, title: str, message: str) -> bool:
        if not self.can_notify():
            return False
        self.tray_icon.notify(message, title)
        return True

    def run_tray(self) -> None:
        if not self.tray_icon:
            return
        try:
            self.running = True
            self.tray_icon.run()
        except Exception as e:
            logger.error(f"System tray runtime error: {e}")
        finally:
            self.running = False

    def stop_tray(self) -> None:
        if self.tray_icon and self.running:
            try:
                self.tray_icon.stop()
            except Exception as e:
                logger.warning(f"Tray stop error: {e}")


class MiniChart:
    """Historic price line chart embedded in a Tk container"""

    def __init__(self, parent):
        self.points: List[ChartPoint] = []
        self.figure = Figure(figsize=(5, 2.2), dpi=100)
        self.ax = self.figure.add_subplot(111)
        self.canvas = FigureCanvasTkAgg(self.figure, parent)
        self.canvas.get_tk_widget().pack(fill='both', expand=True)
        self.set_data([])

    def set_data(self, points: Sequence[ChartPoint], title: Optional[str] = None,
                 days: int = ChartRange.SEVEN_DAYS.value) -> None:
        self.points = list(points)
        self.ax.clear()

        if not self.points:
            self.ax.set_axis_off()
            self.ax.text(0.5, 0.5, "No chart data", color='gray',
                         ha='center', va='center', transform=self.ax.transAxes)
            self.canvas.draw_idle()
            return

        self.ax.set_axis_on()
        times = [p.when for p in self.points]
        prices = [p.price for p in self.points]
        low, high = chart_bounds(prices)

        self.ax.plot(times, prices, color='black', linewidth=2)
        self.ax.set_ylim(low, high)
        self.ax.text(0.01, 0.02, f"{low:.6f}", color='gray', fontsize=8, transform=self.ax.transAxes)
        self.ax.text(0.01, 0.98, f"{high:.6f}", color='gray', fontsize=8, va='top',
                     transform=self.ax.transAxes)
        fmt = '%H:%M' if days <= ChartRange.TWO_DAYS.value else '%m/%d'
        self.ax.xaxis.set_major_formatter(mdates.DateFormatter(fmt))
        self.ax.tick_params(labelsize=7)
        if title:
            self.ax.set_title(title, fontsize=9)
        self.figure.tight_layout()
        self.canvas.draw_idle()


class PriceOverlay:
    """
    Frameless always-on-top price grid.

    Owns the coin and currency lists, the refresh timer and the alarm list.
    Network calls run on daemon threads; their results come back through
    ``root.after`` so the grid and the labels are only touched on the Tk
    thread.
    """

    def __init__(self, root, client: CoinGeckoClient,
                 on_alarm: Optional[Callable[[AlarmHit], None]] = None,
                 on_chart_data: Optional[Callable[[List[ChartPoint]], None]] = None,
                 on_moved: Optional[Callable[[int, int], None]] = None,
                 on_context_menu: Optional[Callable[[Any], None]] = None,
                 tray_available: bool = True):
        self.root = root
        self.client = client
        self.on_alarm = on_alarm
        self.on_chart_data = on_chart_data
        self.on_moved = on_moved
        self.on_context_menu = on_context_menu
        self.hint_text = self._hint_for(tray_available)

        self.grid = PriceGrid([DEFAULT_COIN], [DEFAULT_CURRENCY])
        self.alarms: List[Alarm] = []
        self.refresh_ms = DEFAULT_REFRESH_MS
        self.labels: list = []
        self.hint_label = None
        self._timer_id = None
        self._drag_offset: Optional[Tuple[int, int]] = None

        self.setup_window()
        self.rebuild_labels()
        self.set_refresh_interval(self.refresh_ms)

    def setup_window(self) -> None:
        self.root.overrideredirect(True)
        self.root.attributes('-topmost', True)
        try:
            self.root.attributes('-alpha', 0.85)
        except tk.TclError as e:
            logger.debug(f"Window transparency unsupported: {e}")
        self.root.configure(bg=COLORS['overlay'])

        self.container = tk.Frame(self.root, bg=COLORS['overlay'], padx=10, pady=10)
        self.container.pack(fill='both', expand=True)

        self.root.bind('<ButtonPress-1>', self.on_drag_start)
        self.root.bind('<B1-Motion>', self.on_drag_motion)
        self.root.bind('<ButtonRelease-1>', self.on_drag_end)
        self.root.bind('<Button-3>', self.on_right_click)

    @property
    def coin_ids(self) -> List[str]:
        return list(self.grid.coins)

    @property
    def vs_currencies(self) -> List[str]:
        return list(self.grid.currencies)

    # Configuration
    def set_coins(self, coins: Sequence[str]) -> None:
        self.set_pairs(coins, self.grid.currencies)

    def set_vs_currencies(self, currencies: Sequence[str]) -> None:
        self.set_pairs(self.grid.coins, currencies)

    def set_pairs(self, coins: Sequence[str], currencies: Sequence[str]) -> None:
        self.grid.configure(coins, currencies)
        logger.info(f"Tracking {', '.join(self.grid.coins)} in {', '.join(self.grid.currencies)}")
        self.rebuild_labels()
        self.fetch_prices()

    def set_refresh_interval(self, ms: int) -> None:
        self.refresh_ms = int(ms)
        if self._timer_id is not None:
            self.root.after_cancel(self._timer_id)
        self._timer_id = self.root.after(self.refresh_ms, self._on_timer)

    def stop(self) -> None:
        if self._timer_id is not None:
            try:
                self.root.after_cancel(self._timer_id)
            except tk.TclError as e:
                logger.debug(f"Timer cancel failed: {e}")
            self._timer_id = None

    def set_alarm_lines(self, lines: Iterable[str]) -> None:
        self.alarms = parse_alarm_lines(lines)
        logger.info(f"{len(self.alarms)} price alarm(s) active")

    def alarm_lines(self) -> List[str]:
        return alarm_lines(self.alarms)

    def move(self, x: int, y: int) -> None:
        self.root.geometry(f"+{int(x)}+{int(y)}")

    def position(self) -> Tuple[int, int]:
        return self.root.winfo_x(), self.root.winfo_y()

    # Labels
    def rebuild_labels(self) -> None:
        for widget in self.labels:
            widget.destroy()
        if self.hint_label is not None:
            self.hint_label.destroy()

        self.grid.rebuild()
        self.labels = []
        for text in self.grid.texts:
            lbl = tk.Label(self.container, text=text, fg=COLORS['text'], bg=COLORS['overlay'],
                           font=LABEL_FONT, justify='left', anchor='w')
            lbl.pack(fill='x', anchor='w')
            self.labels.append(lbl)

        self.hint_label = tk.Label(self.container, text=self.hint_text, fg=COLORS['hint'],
                                   bg=COLORS['overlay'], font=HINT_FONT, anchor='w')
        self.hint_label.pack(fill='x', anchor='w', pady=(4, 0))

    @staticmethod
    def _hint_for(tray_available: bool) -> str:
        return ("Drag to move. Right-click tray for options." if tray_available
                else "Right-click for options.")

    def set_tray_available(self, tray_available: bool) -> None:
        self.hint_text = self._hint_for(tray_available)
        if self.hint_label is not None:
            self.hint_label.config(text=self.hint_text)

    def sync_labels(self) -> None:
        for label, text in zip(self.labels, self.grid.texts):
            label.config(text=text)

    # Fetching
    def safe_gui_call(self, func) -> None:
        try:
            self.root.after(0, func)
        except (tk.TclError, RuntimeError) as e:
            logger.debug(f"GUI call failed: {e}")

    def _start_worker(self, target, name: str) -> None:
        threading.Thread(target=target, daemon=True, name=name).start()

    def _on_timer(self) -> None:
        self._timer_id = self.root.after(self.refresh_ms, self._on_timer)
        self.fetch_prices()

    def fetch_prices(self) -> None:
        if not self.grid.coins or not self.grid.currencies:
            return
        self.rebuild_labels()
        for currency in list(self.grid.currencies):
            self.fetch_for_currency(currency)

    def fetch_for_currency(self, currency: str) -> None:
        coin_ids = list(self.grid.coins)

        def worker():
            payload, error = None, None
            try:
                payload = self.client.fetch_markets(currency, coin_ids)
            except Exception as e:
                error = e
            self.safe_gui_call(lambda: self.process_reply(currency, payload, error))

        self._start_worker(worker, f"Markets-{currency}")

    def process_reply(self, currency: str, payload: Any, error: Optional[Exception] = None) -> None:
        """Write a markets reply into the grid (Tk thread only)"""
        if error is not None:
            logger.warning(f"Markets request for {currency} failed: {error}")
            self.grid.apply_error(currency)
            hits = []
        else:
            hits = self.grid.apply_markets(currency, payload, self.alarms)
        self.sync_labels()

        for hit in hits:
            logger.info(f"Alarm: {hit.message}")
            if self.on_alarm:
                self.on_alarm(hit)

    def request_chart(self, days: int = 2) -> None:
        if not self.grid.coins or not self.grid.currencies:
            return
        coin_id, currency = self.grid.coins[0], self.grid.currencies[0]

        def worker():
            try:
                points = self.client.fetch_market_chart(coin_id, currency, days)
            except Exception as e:
                logger.warning(f"Chart request for {coin_id}/{currency} failed: {e}")
                points = []
            self.safe_gui_call(lambda: self.deliver_chart(points))

        self._start_worker(worker, f"Chart-{coin_id}")

    def deliver_chart(self, points: List[ChartPoint]) -> None:
        logger.debug(f"Chart data ready ({len(points)} points)")
        if self.on_chart_data:
            self.on_chart_data(points)

    # Mouse handling
    def on_drag_start(self, event) -> None:
        self._drag_offset = (event.x_root - self.root.winfo_x(), event.y_root - self.root.winfo_y())

    def on_drag_motion(self, event) -> None:
        if self._drag_offset is None:
            return
        dx, dy = self._drag_offset
        self.move(event.x_root - dx, event.y_root - dy)

    def on_drag_end(self, event) -> None:
        if self._drag_offset is None:
            return
        self._drag_offset = None
        if self.on_moved:
            self.on_moved(*self.position())

    def on_right_click(self, event) -> None:
        if self.on_context_menu:
            self.on_context_menu(event)


class SettingsDialog:
    """Modeless settings window with alarm editor and history chart"""

    def __init__(self, app_instance):
        self.app = app_instance
        self.overlay: PriceOverlay = app_instance.overlay
        self.store: SettingsStore = app_instance.store
        self.window = None
        self.chart: Optional[MiniChart] = None
        self.range_buttons: Dict[ChartRange, tk.Button] = {}
        try:
            self.chart_range = ChartRange(self.store['chart_days'])
        except ValueError:
            self.chart_range = ChartRange.SEVEN_DAYS
        self._chart_title = None

    def build(self) -> None:
        self.window = tk.Toplevel(self.app.root)
        self.window.title("Widget Settings")
        self.window.protocol("WM_DELETE_WINDOW", self.hide)

        form = ttk.Frame(self.window, padding=10)
        form.pack(fill='x')
        form.columnconfigure(1, weight=1)

        self.coins_var = tk.StringVar()
        self.vs_var = tk.StringVar()
        self.refresh_var = tk.StringVar()
        self.posx_var = tk.StringVar()
        self.posy_var = tk.StringVar()

        rows = [
            ("Coins (comma):", ttk.Entry(form, textvariable=self.coins_var, width=40)),
            ("Vs Currencies (comma):", ttk.Entry(form, textvariable=self.vs_var, width=40)),
            ("Refresh (ms):", tk.Spinbox(form, from_=MIN_REFRESH_MS, to=MAX_REFRESH_MS,
                                         increment=REFRESH_STEP_MS, textvariable=self.refresh_var)),
            ("Overlay X:", tk.Spinbox(form, from_=-POSITION_LIMIT, to=POSITION_LIMIT,
                                      textvariable=self.posx_var)),
            ("Overlay Y:", tk.Spinbox(form, from_=-POSITION_LIMIT, to=POSITION_LIMIT,
                                      textvariable=self.posy_var)),
        ]
        for row, (text, widget) in enumerate(rows):
            ttk.Label(form, text=text).grid(row=row, column=0, sticky='w', pady=2)
            widget.grid(row=row, column=1, sticky='we', pady=2)

        alarm_box = ttk.LabelFrame(self.window, text="Alarms (one per line: coin,currency,threshold)",
                                   padding=8)
        alarm_box.pack(fill='both', padx=10, pady=5)
        self.alarm_text = tk.Text(alarm_box, height=5, width=48)
        self.alarm_text.pack(fill='both', expand=True)

        chart_box = ttk.LabelFrame(self.window, text="Historic price chart (first coin/currency)",
                                   padding=8)
        chart_box.pack(fill='both', expand=True, padx=10, pady=5)
        range_frame = ttk.Frame(chart_box)
        range_frame.pack(fill='x')
        for chart_range in ChartRange:
            color = COLORS['primary'] if chart_range == self.chart_range else COLORS['secondary']
            btn = create_button(range_frame, chart_range.label, color,
                                lambda r=chart_range: self.change_chart_range(r), width=3)
            btn.pack(side='left', padx=2, pady=(0, 4))
            self.range_buttons[chart_range] = btn
        self.chart = MiniChart(chart_box)

        buttons = ttk.Frame(self.window, padding=10)
        buttons.pack(fill='x')
        create_button(buttons, "Load Chart", COLORS['primary'], self.load_chart).pack(side='left')
        create_button(buttons, "Close", COLORS['secondary'], self.hide).pack(side='right')
        create_button(buttons, "Apply", COLORS['success'], self.apply).pack(side='right', padx=5)

        self.load_settings()

    def show(self) -> None:
        if self.window is None or not self.window.winfo_exists():
            self.build()
        else:
            self.load_settings()
            self.window.deiconify()
        self.window.lift()

    def hide(self) -> None:
        if self.window is not None:
            self.window.withdraw()

    def is_visible(self) -> bool:
        return bool(self.window is not None and self.window.winfo_exists() and self.window.winfo_viewable())

    def load_settings(self) -> None:
        self.coins_var.set(self.store['coins'])
        self.vs_var.set(self.store['vs'])
        self.refresh_var.set(str(self.store['refresh']))
        self.posx_var.set(str(self.store['posx']))
        self.posy_var.set(str(self.store['posy']))
        self.alarm_text.delete('1.0', tk.END)
        self.alarm_text.insert('1.0', self.store['alarms'])

    def update_position_fields(self, x: int, y: int) -> None:
        if self.is_visible():
            self.posx_var.set(str(x))
            self.posy_var.set(str(y))

    def read_form(self) -> dict:
        return {
            'coins': self.coins_var.get(),
            'vs': self.vs_var.get(),
            'refresh': self.refresh_var.get(),
            'posx': self.posx_var.get(),
            'posy': self.posy_var.get(),
            'alarms': self.alarm_text.get('1.0', tk.END),
        }

    def apply(self) -> None:
        try:
            self.apply_values(self.read_form())
            self.load_settings()
        except Exception as e:
            logger.error(f"Applying settings failed: {e}")

    def apply_values(self, values: dict) -> None:
        """Reconfigure the overlay from raw form values and persist them"""
        coins = parse_list(values.get('coins', '')) or [DEFAULT_COIN]
        currencies = parse_list(values.get('vs', '')) or [DEFAULT_CURRENCY]
        refresh = _read_int(values.get('refresh'), self.overlay.refresh_ms, MIN_REFRESH_MS, MAX_REFRESH_MS)
        x, y = self.overlay.position()
        x = _read_int(values.get('posx'), x, -POSITION_LIMIT, POSITION_LIMIT)
        y = _read_int(values.get('posy'), y, -POSITION_LIMIT, POSITION_LIMIT)

        self.overlay.set_pairs(coins, currencies)
        self.overlay.set_refresh_interval(refresh)
        self.overlay.move(x, y)
        self.overlay.set_alarm_lines(str(values.get('alarms', '')).splitlines())

        self.store.update(coins=','.join(coins), vs=','.join(currencies), refresh=refresh,
                          posx=x, posy=y, alarms='\n'.join(self.overlay.alarm_lines()))
        self.store.save()
        logger.info("Settings applied")

    def change_chart_range(self, chart_range: ChartRange) -> None:
        self.chart_range = chart_range
        for r, btn in self.range_buttons.items():
            btn.config(bg=COLORS['primary'] if r == chart_range else COLORS['secondary'])
        self.store.update(chart_days=chart_range.value)
        self.load_chart()

    def load_chart(self) -> None:
        coins, currencies = self.overlay.coin_ids, self.overlay.vs_currencies
        if coins and currencies:
            self._chart_title = f"{coins[0]} / {currencies[0].upper()} ({self.chart_range.label})"
        self.overlay.request_chart(self.chart_range.value)

    def on_chart_data(self, points: List[ChartPoint]) -> None:
        if self.chart is not None:
            self.chart.set_data(points, title=self._chart_title, days=self.chart_range.value)


def _read_int(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return min(high, max(low, number))


class CoinOverlayApp:
    """Wires the overlay, settings, tray and notifications together"""

    def __init__(self, settings_path: Optional[Path] = None,
                 client: Optional[CoinGeckoClient] = None):
        logger.info(f"Initializing {APP_NAME} v{__version__}...")
        self.store = SettingsStore(settings_path)
        self.store.load()
        self.client = client or CoinGeckoClient()
        self.tray_manager = SafeSystemTray()
        self.notification_manager = NotificationManager(self)

        self.root = None
        self.overlay: Optional[PriceOverlay] = None
        self.settings_dialog: Optional[SettingsDialog] = None
        self.context_menu = None
        self.gui_initialized = False
        self.shutdown_requested = False

    @property
    def settings(self) -> dict:
        return self.store.settings

    def setup_gui(self) -> bool:
        try:
            self.root = tk.Tk()
            self.root.title(APP_NAME)
            self.overlay = PriceOverlay(
                self.root, self.client,
                on_alarm=self.handle_alarm,
                on_chart_data=self.handle_chart_data,
                on_moved=self.handle_overlay_moved,
                on_context_menu=self.show_context_menu,
                tray_available=self.tray_manager.available,
            )
            self.settings_dialog = SettingsDialog(self)
            self.gui_initialized = True

            self.overlay.move(self.store['posx'], self.store['posy'])
            self.overlay.set_alarm_lines(self.store['alarms'].splitlines())
            self.overlay.set_refresh_interval(self.store['refresh'])
            self.overlay.set_pairs(self.store.coins, self.store.currencies)
            return True
        except Exception as e:
            logger.critical(f"GUI setup failed: {e}")
            return False

    def safe_gui_call(self, func) -> None:
        try:
            if self.gui_initialized and self.root is not None and not self.shutdown_requested:
                self.root.after(0, func)
        except Exception as e:
            logger.debug(f"GUI call failed: {e}")

    # Callbacks from the overlay
    def handle_alarm(self, hit: AlarmHit) -> None:
        if self.settings.get('enable_notifications', True):
            self.notification_manager.notify("Price Alarm", hit.message,
                                             duration=ALARM_NOTIFICATION_SECONDS, key=hit.key)
        try:
            self.root.bell()
        except tk.TclError as e:
            logger.debug(f"Bell failed: {e}")

    def handle_chart_data(self, points: List[ChartPoint]) -> None:
        if self.settings_dialog is not None:
            self.settings_dialog.on_chart_data(points)

    def handle_overlay_moved(self, x: int, y: int) -> None:
        self.store.update(posx=x, posy=y)
        if self.settings_dialog is not None:
            self.settings_dialog.update_position_fields(x, y)

    # Menu actions (Tk thread)
    def show_overlay(self) -> None:
        self.root.deiconify()
        self.root.lift()

    def hide_overlay(self) -> None:
        self.root.withdraw()

    def show_settings(self) -> None:
        try:
            self.settings_dialog.show()
        except Exception as e:
            logger.error(f"Settings dialog failed: {e}")

    def refresh_now(self) -> None:
        logger.info("Manual refresh requested")
        self.overlay.fetch_prices()

    def notify_prices(self) -> None:
        coins, currencies = self.overlay.coin_ids, self.overlay.vs_currencies

        def worker():
            try:
                payload = self.client.fetch_simple_price(coins, currencies)
                message = format_simple_prices(payload, coins, currencies)
            except Exception as e:
                logger.warning(f"Simple price lookup failed: {e}")
                message = "Price lookup failed"
            self.safe_gui_call(lambda: self.notification_manager.notify(
                "Current Prices", message, debounce_bypass=True))

        threading.Thread(target=worker, daemon=True, name="SimplePrice").start()

    def show_context_menu(self, event) -> None:
        try:
            if self.context_menu is None:
                self.context_menu = tk.Menu(self.root, tearoff=0)
                self.context_menu.add_command(label="Hide Overlay", command=self.hide_overlay)
                self.context_menu.add_separator()
                self.context_menu.add_command(label="Settings", command=self.show_settings)
                self.context_menu.add_command(label="Refresh Now", command=self.refresh_now)
                self.context_menu.add_command(label="Notify Prices", command=self.notify_prices)
                self.context_menu.add_separator()
                self.context_menu.add_command(label="Quit", command=self.quit_application)
            self.context_menu.tk_popup(event.x_root, event.y_root)
        finally:
            if self.context_menu is not None:
                self.context_menu.grab_release()

    def quit_application(self) -> None:
        if self.shutdown_requested:
            return
        logger.info(f"Shutting down {APP_NAME}...")
        self.shutdown_requested = True

        if self.overlay is not None:
            self.overlay.stop()
        self.store.save()
        self.tray_manager.stop_tray()

        if self.root is not None:
            try:
                self.root.quit()
                self.root.destroy()
            except tk.TclError as e:
                logger.debug(f"Root already destroyed: {e}")
        logger.info("Application shutdown complete")

    def run(self) -> bool:
        try:
            logger.info(f"Starting {APP_NAME} v{__version__}...")
            if not self.setup_gui():
                return False

            tray_ready = self.tray_manager.setup_tray(self)
            self.overlay.set_tray_available(tray_ready)
            if tray_ready:
                threading.Thread(target=self.tray_manager.run_tray, daemon=True, name="TrayIcon").start()
            else:
                logger.warning("System tray unavailable, use right-click on the overlay for options")

            self.root.mainloop()
            return True
        except KeyboardInterrupt:
            logger.info("Application interrupted by user")
            return True
        except Exception as e:
            logger.critical(f"Critical runtime error: {e}")
            logger.critical(traceback.format_exc())
            return False
        finally:
            self.quit_application()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=f'{APP_NAME} v{__version__} - cryptocurrency price overlay')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'{APP_NAME} v{__version__}')
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.debug else logging.INFO)
    logger.info(f"Desktop notifications {'available' if NOTIFICATIONS_AVAILABLE else 'unavailable'}")
    logger.info(f"System tray {'available' if SYSTEM_TRAY_AVAILABLE else 'unavailable'}")

    try:
        app = CoinOverlayApp()
        return 0 if app.run() else 1
    except KeyboardInterrupt:
        logger.info("Application terminated by user")
        return 0
    except Exception as e:
        logger.critical(f"Critical startup error: {e}")
        logger.critical(traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
