"""Test package for AlumNode unit and integration tests."""

import logging
import warnings

warnings.filterwarnings(
    "ignore",
    message=r".*drain.*deprecated.*",
    category=DeprecationWarning,
)

logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("alumnode").setLevel(logging.CRITICAL)
