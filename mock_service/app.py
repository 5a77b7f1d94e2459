import asyncio
import os
import secrets
from typing import Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

# Uncached lookups sleep this long to mimic a database round trip.
MISS_DELAY_SECONDS = float(os.environ.get("MOCK_MISS_DELAY_SECONDS", "0.08"))
API_KEY = os.environ.get("MOCK_API_KEY", "test-key")

app = FastAPI(title="Mock URL Shortener")

_urls: Dict[str, str] = {}
_cache: Dict[str, str] = {}


class ShortUrlRequest(BaseModel):
    longUrl: str
    customSlug: Optional[str] = None
    findIfExists: bool = False
    tags: List[str] = []
    title: Optional[str] = None


def reset(miss_delay_seconds: Optional[float] = None) -> None:
    """Forget every short URL and cache entry (used between tests)."""
    global MISS_DELAY_SECONDS
    _urls.clear()
    _cache.clear()
    if miss_delay_seconds is not None:
        MISS_DELAY_SECONDS = miss_delay_seconds


@app.post("/rest/v3/short-urls")
async def create_short_url(body: ShortUrlRequest, x_api_key: Optional[str] = Header(None)):
    if x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="invalid api key")
    code = body.customSlug or secrets.token_urlsafe(6)
    if code in _urls:
        raise HTTPException(status_code=400, detail=f"slug {code} already exists")
    _urls[code] = body.longUrl
    return {"shortCode": code, "longUrl": body.longUrl, "tags": body.tags}


@app.get("/{short_code}")
async def redirect(short_code: str):
    target = _cache.get(short_code)
    if target is None:
        if MISS_DELAY_SECONDS:
            await asyncio.sleep(MISS_DELAY_SECONDS)
        target = _urls.get(short_code)
        if target is None:
            raise HTTPException(status_code=404, detail="not found")
        _cache[short_code] = target
    return RedirectResponse(target, status_code=302)


# Run with: uvicorn mock_service.app:app --port 8080 --reload
