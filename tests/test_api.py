"""Endpoint tests for the FastAPI surface."""

from __future__ import annotations

import dataclasses
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import httpx

import main
from app.runtime import Runtime, build_runtime
from app.settings import RuntimeSettings
from tests.fakes import install_fake_llama_cli, posix_only, write_model


def _sse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for frame in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


class ApiTestBase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        settings = dataclasses.replace(
            RuntimeSettings.load(),
            install_root=self.root / "engine",
            llama_cli_override="",
            telemetry_enabled=False,
            generation_gate="global",
        )
        self.runtime = build_runtime(settings)
        self._previous = main.app.state.runtime
        main.app.state.runtime = self.runtime
        self._transport = httpx.ASGITransport(app=main.app)
        self._client = httpx.AsyncClient(transport=self._transport, base_url="http://testserver")

    async def asyncTearDown(self) -> None:
        await self._client.aclose()
        await self.runtime.shutdown()
        main.app.state.runtime = self._previous
        self._tmp.cleanup()


class EngineEndpointTests(ApiTestBase):
    async def test_ping(self) -> None:
        response = await self._client.get("/ping")
        self.assertEqual(response.json(), {"status": "ok"})

    async def test_status_without_install(self) -> None:
        payload = (await self._client.get("/engine/status")).json()
        self.assertFalse(payload["installed"])
        self.assertEqual(payload["install"]["stage"], "idle")
        self.assertEqual(payload["generation"]["state"], "idle")

    async def test_install_conflict_returns_409(self) -> None:
        with mock.patch.object(Runtime, "start_install", return_value=False):
            response = await self._client.post("/engine/install")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "Installation already in progress")

    async def test_install_progress_before_any_run(self) -> None:
        payload = (await self._client.get("/engine/install")).json()
        self.assertIsNone(payload["result"])
        self.assertFalse(payload["install"]["is_active"])

    async def test_chat_without_model(self) -> None:
        response = await self._client.post("/chat/s1", json={"prompt": "hello"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "failed")
        self.assertEqual(body["visible_text"], "Error: No model selected")

    async def test_load_missing_model_is_400(self) -> None:
        response = await self._client.post("/models/load", json={"path": str(self.root / "nope.gguf")})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Model file not found")

    async def test_template_requires_model(self) -> None:
        response = await self._client.get("/models/template")
        self.assertEqual(response.status_code, 400)

    async def test_stop_routes_do_not_hit_session_chat(self) -> None:
        self.assertEqual((await self._client.post("/chat/stop")).json(), {"stopped": False})
        self.assertEqual((await self._client.post("/chat/stop-all")).json(), {"stopped": 0})
        self.assertEqual((await self._client.post("/chat/s1/stop")).json(), {"stopped": False})


@posix_only
class ChatEndpointTests(ApiTestBase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        install_fake_llama_cli(self.runtime.settings.install_root)
        model = write_model(self.root)
        response = await self._client.post("/models/load", json={"path": str(model), "name": "tiny"})
        self.assertEqual(response.status_code, 200)

    async def test_chat_returns_cleaned_text(self) -> None:
        payload = {
            "prompt": "how are you",
            "history": [
                {"id": "1", "is_from_user": True, "text": "hi"},
                {"id": "2", "is_from_user": False, "text": "hello"},
            ],
        }
        body = (await self._client.post("/chat/s1", json=payload)).json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["text"], "Hello there! How are you?\n\nI am fine.")
        self.assertEqual(body["session_id"], "s1")

    async def test_stream_emits_tokens_then_complete(self) -> None:
        response = await self._client.post("/chat/s1/stream", json={"prompt": "unicode please"})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        events = _sse_events(response.text)
        self.assertEqual(events[-1][0], "complete")
        tokens = "".join(data["text"] for name, data in events if name == "token")
        self.assertEqual(tokens, "café ✓ done")
        self.assertEqual(events[-1][1]["status"], "completed")

    async def test_status_reports_loaded_model(self) -> None:
        payload = (await self._client.get("/engine/status")).json()
        self.assertTrue(payload["installed"])
        self.assertEqual(payload["generation"]["model"]["name"], "tiny")

    async def test_template_endpoint(self) -> None:
        payload = (await self._client.get("/models/template")).json()
        self.assertIn("for m in messages", payload["chat_template"])

    async def test_unload(self) -> None:
        await self._client.post("/models/unload")
        body = (await self._client.post("/chat/s1", json={"prompt": "hello"})).json()
        self.assertEqual(body["error"], "Error: No model selected")


if __name__ == "__main__":
    unittest.main()
