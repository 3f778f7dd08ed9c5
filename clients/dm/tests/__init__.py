"""Test package for the direct message engine."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
