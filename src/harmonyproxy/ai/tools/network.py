"""Tools that reach external HTTP services through httpx."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Mapping

import httpx

from ..orchestration.tools import ToolCategory, ToolSpec
from .base import BuiltinTool, ToolError

__all__ = ["HttpClientTool", "NetworkTool", "WeatherTool", "WebSearchTool", "WEATHER_CODES"]

LOGGER = logging.getLogger(__name__)

_USER_AGENT = "harmonyproxy-http-client/1.0"
_SEARCH_URL = "https://api.duckduckgo.com/"
_GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
_FORECAST_URL = "https://api.open-meteo.com/v1/forecast"

WEATHER_CODES: Mapping[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    71: "Slight snow",
    73: "Moderate snow",
    75: "Heavy snow",
    95: "Thunderstorm",
}


class NetworkTool(BuiltinTool):
    """Base for tools that open short-lived ``httpx.AsyncClient`` sessions."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 10.0) -> None:
        self._transport = transport
        self._timeout = timeout

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        options: dict[str, Any] = {"timeout": self._timeout, "headers": {"User-Agent": _USER_AGENT}}
        options.update(kwargs)
        if self._transport is not None:
            options["transport"] = self._transport
        return httpx.AsyncClient(**options)


class WebSearchTool(NetworkTool):
    spec = ToolSpec(
        name="web_search",
        description=(
            "Search the web for current information on any topic. Returns relevant search results "
            "with titles, URLs, and snippets."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query to look up on the web"},
                "num_results": {
                    "type": "number",
                    "description": "Number of search results to return (default: 5, max: 10)",
                    "minimum": 1,
                    "maximum": 10,
                },
            },
            "required": ["query"],
        },
        category=ToolCategory.SEARCH,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        query = str(params.get("query") or "")
        limit = min(max(1, _as_int(params.get("num_results"), 5)), 10)
        try:
            async with self._client() as client:
                response = await client.get(
                    _SEARCH_URL,
                    params={"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ToolError(f"Search failed: {exc}", {"query": query, "results": []}) from exc

        results = []
        for index, topic in enumerate((data.get("RelatedTopics") or [])[:limit]):
            text = topic.get("Text") or ""
            results.append(
                {
                    "title": text.split(" - ")[0] if text else f"Result {index + 1}",
                    "url": topic.get("FirstURL") or "",
                    "snippet": text or "No description available",
                }
            )
        if not results:
            return {
                "success": True,
                "query": query,
                "results": [],
                "message": "No search results found. This might be due to API limitations or the query being too specific.",
            }
        return {"success": True, "query": query, "results": results, "total_results": len(results)}


class WeatherTool(NetworkTool):
    spec = ToolSpec(
        name="get_weather",
        description="Get current weather information for a specified location using a free weather API.",
        parameters={
            "type": "object",
            "properties": {
                "location": {
                    "type": "string",
                    "description": 'The city and state/country, e.g. "San Francisco, CA" or "London, UK"',
                },
                "unit": {
                    "type": "string",
                    "enum": ["celsius", "fahrenheit"],
                    "description": "Temperature unit (default: celsius)",
                },
            },
            "required": ["location"],
        },
        category=ToolCategory.NETWORK,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        location = str(params.get("location") or "")
        unit = "fahrenheit" if params.get("unit") == "fahrenheit" else "celsius"
        try:
            async with self._client() as client:
                geo = await client.get(
                    _GEOCODING_URL,
                    params={"name": location, "count": 1, "language": "en", "format": "json"},
                )
                geo.raise_for_status()
                places = geo.json().get("results") or []
                if not places:
                    raise ToolError(
                        "Location not found",
                        {
                            "location": location,
                            "message": "Could not find the specified location. Please try a different location name.",
                        },
                    )
                place = places[0]
                forecast = await client.get(
                    _FORECAST_URL,
                    params={
                        "latitude": place["latitude"],
                        "longitude": place["longitude"],
                        "current": "temperature_2m,relative_humidity_2m,weather_code,wind_speed_10m",
                        "temperature_unit": unit,
                        "wind_speed_unit": "kmh",
                        "timezone": "auto",
                    },
                )
                forecast.raise_for_status()
                current = forecast.json().get("current") or {}
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise ToolError(
                f"Weather lookup failed: {exc}",
                {"location": location, "message": "Weather service is currently unavailable. Please try again later."},
            ) from exc

        code = current.get("weather_code")
        return {
            "success": True,
            "location": f"{place.get('name', location)}, {place.get('country', '')}".rstrip(", "),
            "coordinates": {"latitude": place["latitude"], "longitude": place["longitude"]},
            "current_weather": {
                "temperature": current.get("temperature_2m"),
                "unit": unit,
                "humidity": current.get("relative_humidity_2m"),
                "wind_speed": current.get("wind_speed_10m"),
                "wind_unit": "km/h",
                "condition": WEATHER_CODES.get(code, "Unknown") if isinstance(code, int) else "Unknown",
                "weather_code": code,
            },
            "timestamp": current.get("time"),
            "source": "Open-Meteo API",
        }


class HttpClientTool(NetworkTool):
    spec = ToolSpec(
        name="http_client",
        description=(
            "Make HTTP requests to APIs and web services. Supports GET, POST, PUT, DELETE, PATCH "
            "with headers and JSON or text bodies."
        ),
        parameters={
            "type": "object",
            "properties": {
                "method": {
                    "type": "string",
                    "enum": ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
                    "description": "HTTP method to use",
                },
                "url": {"type": "string", "description": "The URL to make the request to"},
                "headers": {"type": "object", "description": "HTTP headers to include in the request"},
                "body": {"type": "string", "description": "Request body (for POST, PUT, PATCH methods)"},
                "json": {
                    "type": "object",
                    "description": "JSON data to send (automatically sets Content-Type to application/json)",
                },
                "timeout": {
                    "type": "number",
                    "description": "Request timeout in milliseconds (default: 10000, max: 30000)",
                    "minimum": 1000,
                    "maximum": 30000,
                    "default": 10000,
                },
                "follow_redirects": {
                    "type": "boolean",
                    "description": "Whether to follow HTTP redirects (default: true)",
                    "default": True,
                },
                "validate_ssl": {
                    "type": "boolean",
                    "description": "Whether to validate SSL certificates (default: true)",
                    "default": True,
                },
            },
            "required": ["method", "url"],
        },
        category=ToolCategory.NETWORK,
    )

    async def run(self, params: dict[str, Any]) -> Any:
        method = str(params.get("method") or "GET").upper()
        url = str(params.get("url") or "")
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise ToolError(f"Invalid URL: {url}", {"details": str(exc)}) from exc
        if parsed.scheme not in {"http", "https"}:
            raise ToolError(
                f"Unsupported protocol: {parsed.scheme or '(none)'}. Only HTTP and HTTPS are allowed."
            )

        headers = {str(key): str(value) for key, value in (params.get("headers") or {}).items()}
        headers.setdefault("User-Agent", _USER_AGENT)
        content: str | None = None
        if params.get("json") is not None:
            content = json.dumps(params["json"])
            headers["Content-Type"] = "application/json"
        elif params.get("body") is not None:
            content = str(params["body"])
        if method in {"GET", "HEAD", "OPTIONS"}:
            content = None

        timeout_ms = min(max(1000, _as_int(params.get("timeout"), 10000)), 30000)
        start = time.perf_counter()
        try:
            async with self._client(
                timeout=timeout_ms / 1000,
                follow_redirects=bool(params.get("follow_redirects", True)),
                verify=bool(params.get("validate_ssl", True)),
            ) as client:
                response = await client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as exc:
            raise ToolError("Request timeout", {"method": method, "url": url, "timeout_ms": timeout_ms}) from exc
        except httpx.HTTPError as exc:
            raise ToolError(
                str(exc) or type(exc).__name__,
                {"method": method, "url": url, "error_type": type(exc).__name__},
            ) from exc

        body = response.text
        parsed_json = None
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type or "text/json" in content_type:
            try:
                parsed_json = response.json()
            except ValueError:
                parsed_json = None
        return {
            "success": True,
            "method": method,
            "url": url,
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "ok": response.is_success,
            "headers": dict(response.headers),
            "body": body,
            "json": parsed_json,
            "size": len(body),
            "response_time_ms": round((time.perf_counter() - start) * 1000, 1),
            "redirected": bool(response.history),
            "final_url": str(response.url),
        }


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
