"""
dealmail: pull promotional emails over JMAP, screenshot them with a headless
browser, and extract coupon codes and sales with Gemini Vision.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("dealmail")
except PackageNotFoundError:
    __version__ = "unknown"
