from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ..errors import EmptyInputError, ServiceError
from .completion_ai import CompletionService, _build_session, summarize_keywords
from .document_insights import plain_text

logger = logging.getLogger("chronicle.images")

PEXELS_BASE_URL = os.getenv("PEXELS_BASE_URL", "https://api.pexels.com/v1/search")
FALLBACK_QUERY_WORDS = 6


@dataclass(frozen=True)
class PexelsImageResult:
    image_url: str
    alt: Optional[str] = None
    source_url: Optional[str] = None
    photographer: Optional[str] = None
    photographer_url: Optional[str] = None


def _api_key() -> str:
    key = os.getenv("PEXELS_API_KEY") or ""
    if not key:
        raise ServiceError("Pexels API key is missing. Add PEXELS_API_KEY to your environment.")
    return key


def _pick_photo(data: Dict[str, Any]) -> PexelsImageResult:
    photos = data.get("photos") or []
    if not photos:
        raise ServiceError("No matching images were found on Pexels.")
    photo = photos[0]
    src = photo.get("src") or {}
    image_url = src.get("large2x") or src.get("large") or src.get("medium")
    if not image_url:
        raise ServiceError("Pexels returned a photo without an accessible source.")
    return PexelsImageResult(
        image_url=image_url,
        alt=photo.get("alt"),
        source_url=photo.get("url"),
        photographer=photo.get("photographer"),
        photographer_url=photo.get("photographer_url"),
    )


def search_pexels_image_sync(query: str, session: Optional[requests.Session] = None) -> PexelsImageResult:
    key = _api_key()
    trimmed = (query or "").strip()
    if not trimmed:
        raise ServiceError("Cannot search Pexels with an empty query.")
    session = session or _build_session()
    try:
        resp = session.get(
            PEXELS_BASE_URL,
            params={"query": trimmed, "per_page": 1, "orientation": "landscape"},
            headers={"Authorization": key},
            timeout=(3, 15),
        )
    except requests.exceptions.RequestException as exc:
        raise ServiceError(f"Pexels request failed: {exc}") from exc
    if not resp.ok:
        raise ServiceError(f"Pexels request failed ({resp.status_code}): {resp.text}")
    return _pick_photo(resp.json())


async def search_pexels_image(query: str) -> PexelsImageResult:
    return await asyncio.to_thread(search_pexels_image_sync, query)


async def find_illustration(service: CompletionService, content: str) -> PexelsImageResult:
    """Find a stock photo that fits the document.

    Keywords come from the model; when that yields nothing the first words
    of the text are used as the query instead.
    """
    text = plain_text(content).strip()
    if not text:
        raise EmptyInputError("Please add some text to your document before generating an image.")
    keywords = await summarize_keywords(service, text)
    query = " ".join(keywords) or " ".join(text.split()[:FALLBACK_QUERY_WORDS])
    logger.debug("illustration_query", extra={"query": query})
    return await search_pexels_image(query)
