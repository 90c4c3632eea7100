"""
Thin HTTP helper shared by the SerpApi-backed search backends.

SerpApi (https://serpapi.com) fronts several Google engines behind one
endpoint; the `engine` param picks which one:
  • google_lens      (type=products) → visual_matches
  • google_shopping                  → shopping_results

Authentication is a plain `api_key` query param.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import aiohttp

from errors import ProviderAuthMissing, ProviderHTTPError, ProviderResponseError

logger = logging.getLogger(__name__)

SERPAPI_URL = "https://serpapi.com/search.json"

# SerpApi answers 200 + this error text when Google simply found nothing.
_EMPTY_MARKER = "hasn't returned any results"


async def serpapi_get(
    params: dict,
    api_key: Optional[str],
    provider: str,
    timeout: float,
) -> dict:
    """
    Single GET against SerpApi. Returns the decoded JSON body.

    Raises ProviderAuthMissing without a key, ProviderHTTPError on non-200,
    ProviderResponseError when the body carries an error other than "no results".
    """
    if not api_key:
        raise ProviderAuthMissing(f"{provider}: SERPAPI_KEY is not set")

    async with aiohttp.ClientSession() as session:
        async with session.get(
            SERPAPI_URL,
            params={**params, "api_key": api_key},
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise ProviderHTTPError(provider, resp.status, text)
            data = await resp.json(content_type=None)

    if not isinstance(data, dict):
        raise ProviderResponseError(f"{provider}: unexpected response type {type(data).__name__}")

    error = data.get("error")
    if error:
        if _EMPTY_MARKER in str(error):
            logger.info("[%s] no results: %s", provider, error)
            return {}
        raise ProviderResponseError(f"{provider}: {error}")
    return data


# ── Field coercion ────────────────────────────────────────────────────────────

def to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).replace(",", "")) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
