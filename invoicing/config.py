import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./invoicing.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "GBP")

DEFAULT_INVOICE_PREFIX = "INV"
DEFAULT_INVOICE_PADDING = 4
