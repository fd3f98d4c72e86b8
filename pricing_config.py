# pricing_config.py

# Discount percent applied per customer pricing tier when the catalog item
# does not carry its own value for that tier.
TIER_DISCOUNT_FALLBACK = {1: 10.0, 2: 15.0, 3: 20.0, 4: 25.0, 5: 30.0}

PRICING_TIERS = (1, 2, 3, 4, 5)
DEFAULT_PRICING_TIER = 1

# Tier discounts are always kept inside this range (percent)
MIN_TIER_DISCOUNT = 0.0
MAX_TIER_DISCOUNT = 30.0

# Extra reduction when a digital membership card is presented at completion.
# Example: 10% off means multiplier = 0.90
CARD_DISCOUNT_MULTIPLIER = 0.90

# Catalog categories treated as installable equipment (lowercase)
EQUIPMENT_CATEGORIES = (
    "alarm",
    "panel",
    "sensor",
    "keyboard",
    "communicator",
    "camera",
    "dispositivo",
    "device",
)

# Categories that keep stock counters
STOCKED_CATEGORIES = ("dispositivo", "sensor", "accesorio", "material")

CATALOG_CATEGORIES = (
    "dispositivo",
    "sensor",
    "accesorio",
    "material",
    "servicio",
    "mano_obra",
)

CURRENCIES = ("USD", "MXN")
DEFAULT_EXCHANGE_RATE = 21.00  # MXN per USD
DEFAULT_MIN_STOCK_LEVEL = 5

# IVA
TAX_RATE = 0.16

# Credit terms -> days until due (first match on the terms text wins)
CREDIT_TERM_DAYS = [
    ("15", 15),
    ("45", 45),
    ("60", 60),
]
DEFAULT_CREDIT_DAYS = 30
