"""
Site client - the WordPress plugin's REST endpoints.

Implements the collaborator calls the dispatch engine consumes:
ability discovery, policy evaluation, workflow suggestion, ability
execution and legacy WP-CLI command execution. Every call returns a
Result; nothing here raises for remote failures.

Endpoints (relative to the site origin):
    GET  /wp-json/gemini-wp-cli/v1/abilities?format=tools
    POST /wp-json/gemini-wp-cli/v1/policies/evaluate
    POST /wp-json/gemini-wp-cli/v1/workflows/suggest
    POST /wp-json/gemini-wp-cli/v1/abilities/{name}/execute?mode=simulate|execute
    POST /wp-json/gemini/v1/execute
"""

from __future__ import annotations
import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlsplit

import aiohttp

from wpagent.foundation.advisory import POLICY, WORKFLOW, Suggestion, parse_suggestions
from wpagent.foundation.dispatch import AbilityDescriptor, AbilityDiscovery
from wpagent.foundation.types import Err, Error, ErrorCode, Ok, Result
from wpagent.server.config import SiteClientConfig

logger = logging.getLogger(__name__)

ABILITIES_PATH = "/wp-json/gemini-wp-cli/v1/abilities"
POLICIES_PATH = "/wp-json/gemini-wp-cli/v1/policies/evaluate"
WORKFLOWS_PATH = "/wp-json/gemini-wp-cli/v1/workflows/suggest"
LEGACY_EXECUTE_PATH = "/wp-json/gemini/v1/execute"


def normalize_origin(site_url: str) -> Optional[str]:
    """``https://example.com/blog/`` -> ``https://example.com``; None if unusable."""
    if not site_url:
        return None
    url = site_url.strip()
    if "://" not in url:
        url = f"https://{url}"
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def looks_like_html(text: str) -> bool:
    head = text.lstrip()[:200].lower()
    return head.startswith("<!doctype") or "<html" in head


@dataclass
class _CacheEntry:
    abilities: Tuple[AbilityDescriptor, ...]
    timestamp: float


class SiteClient:
    """
    aiohttp client for the site plugin.

    Discovery results are cached per (origin, token) for
    ``abilities_cache_seconds``; a cached answer is reported through
    ``AbilityDiscovery.cache_hit``.
    """

    def __init__(
        self,
        config: Optional[SiteClientConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SiteClientConfig()
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self._cache: Dict[str, _CacheEntry] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _headers(self, token: Optional[str], purpose: str) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": f"{self.config.user_agent} ({purpose})",
        }
        if token:
            headers["X-Gemini-Auth"] = token
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        token: Optional[str],
        purpose: str,
        timeout: float,
        body: Optional[Dict[str, Any]] = None,
    ) -> Result[Any, Error]:
        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                json=body,
                headers=self._headers(token, purpose),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                text = await response.text()

                if response.status == 404:
                    if looks_like_html(text):
                        return Err(Error(
                            ErrorCode.PLUGIN_NOT_FOUND,
                            "WP-Agent plugin not found. Check that it is installed and active.",
                            {"status": 404},
                        ))
                    return Err(Error(ErrorCode.UNSUPPORTED, f"{purpose} is not supported by this site", {"status": 404}))

                if response.status in (401, 403):
                    return Err(Error(ErrorCode.UNAUTHORIZED, f"Site rejected the token ({response.status})", {"status": response.status}))

                if response.status >= 400:
                    return Err(Error(
                        ErrorCode.HTTP_ERROR,
                        f"Site responded with {response.status}",
                        {"status": response.status, "body": text[:200]},
                    ))

                if looks_like_html(text):
                    return Err(Error(
                        ErrorCode.PLUGIN_NOT_FOUND,
                        "Site returned an HTML page instead of JSON. The plugin may be inactive.",
                    ))

                try:
                    return Ok(json.loads(text) if text else {})
                except json.JSONDecodeError:
                    return Err(Error(ErrorCode.INVALID_RESPONSE, f"Invalid JSON from site: {text[:200]}"))

        except asyncio.TimeoutError:
            return Err(Error(ErrorCode.TIMEOUT, f"{purpose} timed out after {timeout}s"))
        except aiohttp.ClientError as e:
            return Err(Error(ErrorCode.CONNECTION_ERROR, f"Connection error: {e}"))

    def _origin(self, site_url: str) -> Result[str, Error]:
        origin = normalize_origin(site_url)
        if origin is None:
            return Err(Error(ErrorCode.INVALID_INPUT, f"Invalid site URL: {site_url!r}"))
        return Ok(origin)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    @staticmethod
    def cache_key(origin: str, token: Optional[str]) -> str:
        return hashlib.sha256(f"{origin}|{token or ''}".encode()).hexdigest()

    async def discover_abilities(self, site_url: str, token: Optional[str]) -> Result[AbilityDiscovery, Error]:
        origin = self._origin(site_url)
        if origin.is_err():
            return origin
        origin = origin.unwrap()

        key = self.cache_key(origin, token)
        entry = self._cache.get(key)
        now = self._clock()
        if entry is not None and now - entry.timestamp < self.config.abilities_cache_seconds:
            logger.debug(f"Abilities cache hit for {origin}")
            return Ok(AbilityDiscovery(entry.abilities, cache_hit=True))

        result = await self._request(
            "GET", f"{origin}{ABILITIES_PATH}?format=tools", token, "discovery", self.config.timeout,
        )
        if result.is_err():
            return result

        data = result.unwrap()
        items = data.get("tools") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return Err(Error(ErrorCode.INVALID_RESPONSE, "Discovery response has no tools list"))

        abilities = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                abilities.append(AbilityDescriptor.from_dict(item))
            except ValueError as e:
                logger.debug(f"Skipping ability: {e}")

        self._cache[key] = _CacheEntry(tuple(abilities), now)
        logger.info(f"Discovered {len(abilities)} abilities on {origin}")
        return Ok(AbilityDiscovery(tuple(abilities), cache_hit=False))

    # -------------------------------------------------------------------------
    # Advisory
    # -------------------------------------------------------------------------

    async def evaluate_policies(
        self,
        site_url: str,
        token: Optional[str],
        context: Dict[str, Any],
    ) -> Result[List[Suggestion], Error]:
        origin = self._origin(site_url)
        if origin.is_err():
            return origin

        result = await self._request(
            "POST", f"{origin.unwrap()}{POLICIES_PATH}", token, "policy evaluation", self.config.timeout,
            body={"context": context, "include_suggestions": True},
        )
        if result.is_err():
            return result

        data = result.unwrap()
        if not isinstance(data, dict):
            return Err(Error(ErrorCode.INVALID_RESPONSE, "Policy response is not an object"))
        items = data.get("suggestions") or data.get("triggered_policies") or []
        return Ok(parse_suggestions(items, POLICY))

    async def suggest_workflows(
        self,
        site_url: str,
        token: Optional[str],
        user_input: str,
        policy: List[Suggestion],
    ) -> Result[List[Suggestion], Error]:
        origin = self._origin(site_url)
        if origin.is_err():
            return origin

        result = await self._request(
            "POST", f"{origin.unwrap()}{WORKFLOWS_PATH}", token, "workflow suggestion", self.config.timeout,
            body={"user_input": user_input, "policy_context": [s.to_dict() for s in policy]},
        )
        if result.is_err():
            return result

        data = result.unwrap()
        if not isinstance(data, dict):
            return Err(Error(ErrorCode.INVALID_RESPONSE, "Workflow response is not an object"))
        items = data.get("workflows") or data.get("suggestions") or []
        return Ok(parse_suggestions(items, WORKFLOW))

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_ability(
        self,
        ability_name: str,
        arguments: Dict[str, Any],
        site_url: str,
        token: Optional[str],
        mode: str,
    ) -> Result[Dict[str, Any], Error]:
        if mode not in ("simulate", "execute"):
            return Err(Error(ErrorCode.INVALID_INPUT, f"Invalid mode: {mode}"))
        origin = self._origin(site_url)
        if origin.is_err():
            return origin

        url = f"{origin.unwrap()}{ABILITIES_PATH}/{quote(ability_name, safe='')}/execute?mode={mode}"
        timeout = self.config.simulate_timeout if mode == "simulate" else self.config.execute_timeout
        logger.info(f"[{mode.upper()}] {ability_name} on {origin.unwrap()}")

        result = await self._request("POST", url, token, f"ability {mode}", timeout, body=arguments or {})
        if result.is_err():
            return result

        data = result.unwrap()
        if not isinstance(data, dict):
            data = {"result": data}
        if mode == "simulate":
            return Ok({
                "status": data.get("status", "success"),
                "mode": "simulation",
                "ability_name": ability_name,
                "simulation_result": data.get("simulation_result"),
                "impact_report": data.get("impact_report"),
                "message": data.get("message"),
                "execution_time": data.get("execution_time"),
                "note": "This was a simulation - no actual changes were made",
            })
        return Ok({
            "status": data.get("status", "success"),
            "mode": "execution",
            "ability_name": ability_name,
            "ability_result": data.get("result"),
            "message": data.get("message"),
            "execution_time": data.get("execution_time"),
        })

    async def execute_command(
        self,
        command: str,
        site_url: str,
        token: Optional[str],
    ) -> Result[Dict[str, Any], Error]:
        origin = self._origin(site_url)
        if origin.is_err():
            return origin

        result = await self._request(
            "POST", f"{origin.unwrap()}{LEGACY_EXECUTE_PATH}", token, "command execution",
            self.config.execute_timeout, body={"command": command},
        )
        if result.is_err():
            return result

        data = result.unwrap()
        if not isinstance(data, dict):
            data = {"response": data}
        return Ok(data)
