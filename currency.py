"""
currency.py — price string helpers and currency inference.

Providers often return "$20" without saying *which* dollar. Inference order:

  1. explicit regional marker in the string   "S$20", "20 SGD", "US$5"
  2. region default for an ambiguous symbol   "$20" + region "sg" → SGD
  3. generic symbol table                     "$20" → USD, "€5" → EUR
  4. None
"""
from __future__ import annotations

import re
from typing import Optional

# Prefix markers use a negative lookbehind so "US$" is never read as "S$".
_EXPLICIT_MARKERS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"(?<![A-Za-z])US\$|\bUSD\b|United States", re.I), "USD"),
    (re.compile(r"(?<![A-Za-z])S\$|\bSGD\b|Singapore", re.I),      "SGD"),
    (re.compile(r"(?<![A-Za-z])AU?\$|\bAUD\b", re.I),               "AUD"),
    (re.compile(r"(?<![A-Za-z])CA?\$|\bCAD\b", re.I),               "CAD"),
    (re.compile(r"(?<![A-Za-z])HK\$|\bHKD\b", re.I),                "HKD"),
    (re.compile(r"(?<![A-Za-z])NZ\$|\bNZD\b", re.I),                "NZD"),
    (re.compile(r"(?<![A-Za-z])RM\s?\d|\bMYR\b"),                   "MYR"),
    (re.compile(r"\bEUR\b"),                                         "EUR"),
    (re.compile(r"\bGBP\b"),                                         "GBP"),
    (re.compile(r"\bJPY\b"),                                         "JPY"),
    (re.compile(r"\bCNY\b|\bRMB\b"),                                 "CNY"),
    (re.compile(r"\bINR\b"),                                         "INR"),
]

# Symbols whose meaning depends on where the shopper is.
_REGION_DEFAULTS: dict[str, dict[str, str]] = {
    "$": {
        "sg": "SGD", "us": "USD", "au": "AUD", "ca": "CAD",
        "hk": "HKD", "nz": "NZD", "tw": "TWD", "mx": "MXN",
    },
    "¥": {"jp": "JPY", "cn": "CNY"},
}

_GENERIC_SYMBOLS: list[tuple[str, str]] = [
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("₩", "KRW"),
]


def infer_currency(price: Optional[str], region: Optional[str] = None) -> Optional[str]:
    if not price:
        return None
    text = str(price).strip()

    for pattern, code in _EXPLICIT_MARKERS:
        if pattern.search(text):
            return code

    if region:
        region = region.lower()
        for symbol, by_region in _REGION_DEFAULTS.items():
            if symbol in text and region in by_region:
                return by_region[region]

    for symbol, code in _GENERIC_SYMBOLS:
        if symbol in text:
            return code
    return None


def clean_price(price: Optional[str]) -> Optional[str]:
    """Strip whitespace and trailing footnote asterisks: '$20.00*' → '$20.00'."""
    if price is None:
        return None
    cleaned = re.sub(r"\*+$", "", str(price).strip()).strip()
    return cleaned or None


def parse_price(price: Optional[str]) -> Optional[float]:
    """Extract numeric value from strings like '$29.99', '29.99', 'S$1,299.00'."""
    try:
        cleaned = re.sub(r"[^\d.]", "", str(price).replace(",", ""))
        return float(cleaned) if cleaned else None
    except ValueError:
        return None
