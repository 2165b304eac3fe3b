"""Constants used throughout the synchronization core.

This module centralizes the intervals, TTLs and fallback values that appear
across the pricing, scheduling and valuation modules so they can be tuned
in one place.
"""

# Polling cadence (seconds)
DEFAULT_PRICE_INTERVAL = 30.0
DEFAULT_BALANCE_INTERVAL = 30.0
DEFAULT_POSITIONS_INTERVAL = 60.0

# Upstream request bound; a hung call must not outlive the next tick
UPSTREAM_TIMEOUT_SECONDS = 10.0

# Quote cache
DEFAULT_PRICE_TTL = 30.0  # shortest rate-limit safe interval for the CLOB
DEFAULT_QUOTE_SIDE = "BUY"

# Persisted cache (news, price history)
CACHE_PREFIX = "predictions_cache_v1"
DEFAULT_NEWS_TTL = 10 * 60.0
APP_STATE_KEY = "appState"

# Position queries issued in parallel on every positions poll
POSITION_STATUSES = ("won", "filled", "open")

# Valuation
DEFAULT_CURRENT_PRICE = 0.5
RESOLVED_PRICE = 1.0
OPEN_POSITION_STATUSES = frozenset({"filled"})
CLOSED_MARKET_STATUSES = frozenset({"closed"})

# Upstream endpoints
DEFAULT_API_URL = "http://localhost:8000/api/v1"
DEFAULT_CLOB_URL = "https://clob.polymarket.com"
