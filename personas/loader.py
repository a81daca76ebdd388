"""
Persona cache.

An explicitly constructed object handed to the components that need
personas. Each role's file is loaded once and kept until clear() or until
ttl_seconds elapses (ttl_seconds=0 keeps it for the object's lifetime).

Data comes from a local directory (data_dir/agents.json) or over HTTP
(base_url/agents.json).
"""
import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from .specs import PersonaDescriptor, Role, find_persona

logger = logging.getLogger(__name__)

PERSONA_FILES = {
    Role.AGENT: "agents.json",
    Role.CUSTOMER: "customers.json",
}


class PersonaCache:
    """Loads and caches persona data per role."""

    def __init__(
        self,
        data_dir: Optional[str] = None,
        base_url: Optional[str] = None,
        ttl_seconds: int = 0,
        http_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.data_dir = Path(data_dir) if data_dir else None
        self.base_url = base_url.rstrip("/") if base_url else None
        self.ttl_seconds = ttl_seconds
        self.http_timeout = http_timeout
        self._clock = clock
        # role -> (decoded file, loaded_at)
        self._cache: Dict[Role, Tuple[Any, float]] = {}

    @property
    def is_configured(self) -> bool:
        return self.data_dir is not None or self.base_url is not None

    def clear(self) -> None:
        self._cache.clear()

    def prime(self, role: Role, data: Any) -> None:
        """Seed the cache with already-decoded persona data."""
        self._cache[role] = (data, self._clock())

    def _cached(self, role: Role) -> Optional[Any]:
        entry = self._cache.get(role)
        if entry is None:
            return None
        data, loaded_at = entry
        if self.ttl_seconds and self._clock() - loaded_at >= self.ttl_seconds:
            del self._cache[role]
            return None
        return data

    async def _fetch(self, role: Role) -> Any:
        file_name = PERSONA_FILES[role]
        if self.data_dir is not None:
            path = self.data_dir / file_name
            logger.info(f"Loading persona data from: {path}")
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
            return json.loads(text)

        if self.base_url is not None:
            url = f"{self.base_url}/{file_name}"
            logger.info(f"Loading persona data from: {url}")
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.json()

        raise RuntimeError("No persona source configured (PERSONA_DATA_DIR or PERSONA_BASE_URL)")

    async def load(self, role: Role, name: str) -> Optional[PersonaDescriptor]:
        """Return the named persona, or None if it cannot be found or loaded."""
        try:
            data = self._cached(role)
            if data is None:
                data = await self._fetch(role)
                self._cache[role] = (data, self._clock())
        except Exception as e:
            logger.error(f"Error loading persona data for {role.value}: {type(e).__name__}: {e}")
            return None

        persona = find_persona(data, role, name)
        if persona is None:
            logger.error(f"Persona not found: {role.value}/{name}")
        return persona
