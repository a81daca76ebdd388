"""
Tests for persona descriptors and the injected persona cache.

These tests verify that:
1. Agent and customer entries become descriptors with the right prompts
2. Both the wrapper object and a bare list are accepted
3. The cache loads from a directory or over HTTP, and honors clear() and TTL
4. Load failures and unknown names return None instead of raising
"""

import asyncio
import json

import httpx
import pytest

from conftest import AGENTS, CUSTOMERS
from personas import PersonaCache, Role, find_persona


class TestFindPersona:
    def test_agent_persona(self):
        persona = find_persona(AGENTS, Role.AGENT, "Sarah")

        assert persona.name == "Sarah"
        assert persona.role == Role.AGENT
        assert persona.introduction.startswith("Hi, this is Sarah")
        assert "Competence: High" in persona.system_prompt
        assert "Patient, never interrupts." in persona.system_prompt

    def test_customer_persona(self):
        persona = find_persona(CUSTOMERS, Role.CUSTOMER, "Lucy")

        assert persona.system_prompt.startswith("You are Lucy")
        assert persona.introduction == ""

    def test_bare_list(self):
        persona = find_persona(CUSTOMERS["CustomerPrompts"], Role.CUSTOMER, "Lucy")
        assert persona is not None

    def test_unknown_name(self):
        assert find_persona(AGENTS, Role.AGENT, "Nobody") is None

    def test_garbage_data(self):
        assert find_persona("not json", Role.AGENT, "Sarah") is None
        assert find_persona({"AgentPrompts": ["x", 1]}, Role.AGENT, "Sarah") is None


class TestPersonaCache:
    @pytest.mark.asyncio
    async def test_loads_from_directory(self, tmp_path):
        (tmp_path / "agents.json").write_text(json.dumps(AGENTS))
        (tmp_path / "customers.json").write_text(json.dumps(CUSTOMERS))
        cache = PersonaCache(data_dir=str(tmp_path))

        assert (await cache.load(Role.AGENT, "Sarah")).name == "Sarah"
        assert (await cache.load(Role.CUSTOMER, "Lucy")).name == "Lucy"

    @pytest.mark.asyncio
    async def test_file_read_runs_in_worker_thread(self, tmp_path, monkeypatch):
        (tmp_path / "agents.json").write_text(json.dumps(AGENTS))
        offloaded = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func)
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr("personas.loader.asyncio.to_thread", recording_to_thread)
        cache = PersonaCache(data_dir=str(tmp_path))

        assert (await cache.load(Role.AGENT, "Sarah")).name == "Sarah"
        assert len(offloaded) == 1
        assert offloaded[0].__name__ == "read_text"

    @pytest.mark.asyncio
    async def test_cached_until_clear(self, tmp_path):
        path = tmp_path / "customers.json"
        path.write_text(json.dumps(CUSTOMERS))
        cache = PersonaCache(data_dir=str(tmp_path))
        assert await cache.load(Role.CUSTOMER, "Lucy") is not None

        path.write_text(json.dumps({"CustomerPrompts": []}))
        assert await cache.load(Role.CUSTOMER, "Lucy") is not None

        cache.clear()
        assert await cache.load(Role.CUSTOMER, "Lucy") is None

    @pytest.mark.asyncio
    async def test_ttl_refresh(self, tmp_path):
        now = [0.0]
        path = tmp_path / "customers.json"
        path.write_text(json.dumps(CUSTOMERS))
        cache = PersonaCache(data_dir=str(tmp_path), ttl_seconds=60, clock=lambda: now[0])
        assert await cache.load(Role.CUSTOMER, "Lucy") is not None

        path.write_text(json.dumps({"CustomerPrompts": []}))
        now[0] = 59.0
        assert await cache.load(Role.CUSTOMER, "Lucy") is not None
        now[0] = 60.0
        assert await cache.load(Role.CUSTOMER, "Lucy") is None

    @pytest.mark.asyncio
    async def test_missing_file_returns_none(self, tmp_path):
        cache = PersonaCache(data_dir=str(tmp_path))
        assert await cache.load(Role.AGENT, "Sarah") is None

    @pytest.mark.asyncio
    async def test_unconfigured_returns_none(self):
        cache = PersonaCache()
        assert cache.is_configured is False
        assert await cache.load(Role.AGENT, "Sarah") is None

    @pytest.mark.asyncio
    async def test_loads_over_http(self, monkeypatch):
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, json=AGENTS)

        real_client = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            return real_client(*args, **kwargs)

        monkeypatch.setattr("personas.loader.httpx.AsyncClient", client_factory)
        cache = PersonaCache(base_url="https://assets.example.com/")

        persona = await cache.load(Role.AGENT, "Sarah")

        assert persona.name == "Sarah"
        assert requested == ["https://assets.example.com/agents.json"]

    @pytest.mark.asyncio
    async def test_http_error_returns_none(self, monkeypatch):
        real_client = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(lambda request: httpx.Response(500))
            return real_client(*args, **kwargs)

        monkeypatch.setattr("personas.loader.httpx.AsyncClient", client_factory)
        cache = PersonaCache(base_url="https://assets.example.com")

        assert await cache.load(Role.AGENT, "Sarah") is None

    @pytest.mark.asyncio
    async def test_prime(self, personas):
        assert (await personas.load(Role.AGENT, "Sarah")).name == "Sarah"
