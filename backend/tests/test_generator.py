import asyncio
import json

import httpx
import pytest

from readingplan.gemini_client import GeminiClient, GeminiError
from readingplan.generator import (
	GenerationError,
	GenerationRequest,
	activity_prompt,
	call_with_retries,
	extract_json,
	fallback_content,
	screen_content,
	validate_assessment,
	validate_story,
)
from readingplan.settings import settings

from conftest import ASSESSMENT, STORY


def test_extract_json_tolerates_code_fences():
	assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}
	assert extract_json('Sure! {"a": 2} Enjoy.') == {"a": 2}
	with pytest.raises(GenerationError):
		extract_json("no json here")


def test_policy_screen():
	screen_content({"text": "a friendly cat"})
	with pytest.raises(GenerationError):
		screen_content({"text": "something Violent"})


def test_retries_until_success():
	calls = []

	async def flaky():
		calls.append(1)
		if len(calls) < 2:
			raise GenerationError("try again")
		return "ok"

	assert asyncio.run(call_with_retries(flaky, what="test")) == "ok"
	assert len(calls) == 2


def test_timeouts_become_generation_errors():
	calls = []

	async def slow():
		calls.append(1)
		await asyncio.sleep(1)

	config = settings.model_copy(update={"generation_timeout_seconds": 0.01, "generation_max_attempts": 2})
	with pytest.raises(GenerationError):
		asyncio.run(call_with_retries(slow, what="test", config=config))
	assert len(calls) == 2


def test_other_errors_are_not_retried():
	calls = []

	async def broken():
		calls.append(1)
		raise KeyError("bug")

	with pytest.raises(KeyError):
		asyncio.run(call_with_retries(broken, what="test"))
	assert len(calls) == 1


def test_assessment_answer_must_be_an_option():
	assert validate_assessment(ASSESSMENT)["passage"] == ASSESSMENT["passage"]
	bad = json.loads(json.dumps(ASSESSMENT))
	bad["questions"][0]["correctAnswer"] = "Purple"
	with pytest.raises(GenerationError):
		validate_assessment(bad)


def test_story_needs_three_parts():
	assert validate_story(STORY)["part3"] == STORY["part3"]
	with pytest.raises(GenerationError):
		validate_story({"title": "Half a story", "part1": "Once"})


def test_prompt_carries_story_and_age():
	prompt = activity_prompt(GenerationRequest(story_text="The fox ran home.", activity_type="sequence", student_age=7))
	assert "The fox ran home." in prompt
	assert "7-year-old" in prompt


def test_fallback_content_is_a_copy():
	first = fallback_content("who")
	first["question"] = "changed"
	assert fallback_content("who")["question"] != "changed"
	assert fallback_content("spelling") is None


def test_gemini_client_reads_first_candidate(monkeypatch):
	monkeypatch.setattr(settings, "openrouter_api_key", None)
	monkeypatch.setattr(settings, "gemini_provider", "ai_studio")
	seen = {}

	def handler(request):
		seen["key"] = request.url.params.get("key")
		return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": '{"ok": true}'}]}}]})

	async def run():
		client = GeminiClient("test-key", model="gemini-test", transport=httpx.MockTransport(handler))
		try:
			return await client.generate("hello")
		finally:
			await client.aclose()

	assert asyncio.run(run()) == '{"ok": true}'
	assert seen["key"] == "test-key"


def test_gemini_client_errors_without_fallback(monkeypatch):
	monkeypatch.setattr(settings, "openrouter_api_key", None)

	async def run():
		client = GeminiClient("test-key", transport=httpx.MockTransport(lambda request: httpx.Response(500)))
		try:
			return await client.generate("hello")
		finally:
			await client.aclose()

	with pytest.raises(GeminiError):
		asyncio.run(run())


def test_gemini_client_needs_a_key(monkeypatch):
	monkeypatch.setattr(settings, "gemini_api_key", None)
	with pytest.raises(ValueError):
		GeminiClient()
