"""External content generator: request/response contract and the Gemini-backed implementation."""
from __future__ import annotations
import asyncio
import copy
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .gemini_client import GeminiClient, GeminiError
from .settings import Settings, settings

logger = logging.getLogger(__name__)


class GenerationError(Exception):
	"""One failed generation attempt (timeout, transport error, malformed or rejected payload)."""


@dataclass(frozen=True)
class GenerationRequest:
	story_text: str
	activity_type: str
	student_age: int
	prior_activity_context: Optional[Dict[str, Any]] = None


class ContentGenerator(Protocol):
	async def generate_activity(self, request: GenerationRequest) -> Dict[str, Any]: ...

	async def generate_story(self, *, student_name: str, student_age: int, grade_level: int, interests: List[str], theme: str) -> Dict[str, Any]: ...

	async def generate_assessment(self, *, grade_level: int) -> Dict[str, Any]: ...


class StoryPayload(BaseModel):
	title: str = Field(min_length=1)
	themes: List[str] = Field(default_factory=list)
	part1: str = Field(min_length=1)
	part2: str = Field(min_length=1)
	part3: str = Field(min_length=1)
	vocabulary: List[str] = Field(default_factory=list)


class AssessmentQuestion(BaseModel):
	question: str = Field(min_length=1)
	options: List[str] = Field(min_length=2)
	correctAnswer: str = Field(min_length=1)
	type: str = "comprehension"

	@field_validator("options")
	@classmethod
	def _distinct_options(cls, v: List[str]) -> List[str]:
		if len({o.strip().lower() for o in v}) != len(v):
			raise ValueError("duplicate option text")
		return v


class AssessmentPayload(BaseModel):
	passage: str = Field(min_length=1)
	questions: List[AssessmentQuestion] = Field(min_length=1)


# Minimal content-policy screen applied to everything the model returns
BLOCKED_TERMS = ("violent", "inappropriate", "offensive")


def screen_content(payload: Any) -> None:
	text = json.dumps(payload).lower()
	for term in BLOCKED_TERMS:
		if term in text:
			raise GenerationError(f"content rejected by policy screen: {term}")


def extract_json(text: str) -> Any:
	try:
		return json.loads(text)
	except ValueError:
		pass
	code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
	if code_block:
		try:
			return json.loads(code_block.group(1))
		except ValueError:
			pass
	first = text.find("{")
	last = text.rfind("}")
	if first != -1 and last > first:
		try:
			return json.loads(text[first : last + 1])
		except ValueError:
			pass
	raise GenerationError("model did not return valid JSON")


async def call_with_retries(
	make_call: Callable[[], Awaitable[Any]],
	*,
	what: str,
	config: Settings = settings,
) -> Any:
	"""Run ``make_call`` with a per-attempt timeout and exponential backoff between attempts.

	Raises the last GenerationError once attempts are exhausted.
	"""
	async for attempt in AsyncRetrying(
		stop=stop_after_attempt(max(1, config.generation_max_attempts)),
		wait=wait_exponential(min=config.generation_backoff_min_seconds, max=config.generation_backoff_max_seconds),
		retry=retry_if_exception_type(GenerationError),
		reraise=True,
	):
		with attempt:
			n = attempt.retry_state.attempt_number
			try:
				return await asyncio.wait_for(make_call(), timeout=config.generation_timeout_seconds)
			except asyncio.TimeoutError as e:
				logger.warning("%s attempt %d timed out after %.1fs", what, n, config.generation_timeout_seconds)
				raise GenerationError(f"{what} timed out") from e
			except GenerationError as e:
				logger.warning("%s attempt %d failed: %s", what, n, e)
				raise


_ACTIVITY_FORMATS = {
	"who": (
		"Extract 3-5 characters that appear in this chapter and 2-3 plausible decoy characters that do not.",
		'{"question": "...", "instructions": "...", "real_characters": [{"name": "...", "role": "protagonist|antagonist|supporting", "description": "..."}], "decoy_characters": [{"name": "...", "role": "...", "description": "..."}]}',
	),
	"where": (
		"Extract the 1-3 settings where this chapter happens and 2-3 plausible decoy settings that do not appear.",
		'{"question": "...", "instructions": "...", "real_settings": [{"name": "...", "description": "..."}], "decoy_settings": [{"name": "...", "description": "..."}]}',
	),
	"sequence": (
		"List 4-6 key events of this chapter. The order field gives the chronological position starting at 1.",
		'{"question": "...", "instructions": "...", "events": [{"id": "e1", "text": "...", "order": 1}]}',
	),
	"main-idea": (
		"Write 4 statements about the main idea of this chapter. Exactly one is correct; each has short feedback.",
		'{"question": "...", "instructions": "...", "options": [{"text": "...", "is_correct": true, "feedback": "..."}]}',
	),
	"vocabulary": (
		"Pick 3-5 words from the chapter worth learning, with kid-friendly definitions, a context sentence from the chapter, and 2-3 decoy definitions.",
		'{"question": "...", "instructions": "...", "words": [{"word": "...", "definition": "...", "context_sentence": "..."}], "decoy_definitions": ["..."]}',
	),
	"predict": (
		"Write 4 predictions of what happens next, each with a plausibility score from 1 to 10 and short feedback.",
		'{"question": "...", "instructions": "...", "options": [{"text": "...", "plausibility": 7, "feedback": "..."}]}',
	),
}


def activity_prompt(request: GenerationRequest) -> str:
	task, shape = _ACTIVITY_FORMATS[request.activity_type]
	context = ""
	if request.prior_activity_context:
		context = f"Earlier activities for this story (avoid repeating them):\n{json.dumps(request.prior_activity_context)}\n"
	return (
		"You create reading comprehension activities for children.\n"
		f"Story chapter (verbatim):\n---\n{request.story_text}\n---\n"
		f"{context}"
		f"Task: {task}\n"
		f"Everything must be age-appropriate for a {request.student_age}-year-old. Option texts must all be different.\n"
		f"Return ONLY compact JSON shaped like: {shape}\n"
		"No markdown, no extra commentary."
	)


class GeminiContentGenerator:
	def __init__(self, *, model: Optional[str] = None) -> None:
		self.model = model

	async def _generate_json(self, prompt: str, *, model: Optional[str] = None) -> Any:
		try:
			client = GeminiClient(model=model or self.model)
		except ValueError as e:
			raise GenerationError(str(e)) from e
		try:
			raw = await client.generate(prompt)
		except GeminiError as e:
			raise GenerationError(str(e)) from e
		finally:
			await client.aclose()
		data = extract_json(raw)
		screen_content(data)
		return data

	async def generate_activity(self, request: GenerationRequest) -> Dict[str, Any]:
		data = await self._generate_json(activity_prompt(request), model=settings.gemini_model_activities)
		if not isinstance(data, dict):
			raise GenerationError(f"{request.activity_type} content is not a JSON object")
		return data

	async def generate_story(self, *, student_name: str, student_age: int, grade_level: int, interests: List[str], theme: str) -> Dict[str, Any]:
		prompt = (
			"You are a children's author writing a three-chapter story.\n"
			f"Reader: {student_name}, age {student_age}, grade {grade_level}. Interests: {', '.join(interests) or 'anything'}.\n"
			f"Theme: {theme}.\n"
			"Each chapter is 250-400 words at the reader's grade level and ends in a way that invites a prediction.\n"
			"Return ONLY compact JSON with keys: title, themes (array of strings), part1, part2, part3, vocabulary (array of 5-8 words used in the story).\n"
			"No markdown, no extra commentary."
		)
		data = await self._generate_json(prompt)
		return validate_story(data)

	async def generate_assessment(self, *, grade_level: int) -> Dict[str, Any]:
		prompt = (
			"You write reading fluency assessments for children.\n"
			f"Write one self-contained passage of 120-200 words at grade {grade_level} reading level.\n"
			"Then write 5 multiple-choice questions (4 options each): 3 comprehension and 2 vocabulary.\n"
			'Return ONLY compact JSON: {"passage": "...", "questions": [{"question": "...", "options": ["..."], "correctAnswer": "<exact option text>", "type": "comprehension|vocabulary"}]}\n'
			"No markdown, no extra commentary."
		)
		data = await self._generate_json(prompt)
		return validate_assessment(data)


def validate_assessment(data: Any) -> Dict[str, Any]:
	try:
		payload = AssessmentPayload.model_validate(data)
	except ValidationError as e:
		raise GenerationError(f"invalid assessment payload: {e.errors()[0]['msg']}") from e
	for q in payload.questions:
		if q.correctAnswer.strip().lower() not in {o.strip().lower() for o in q.options}:
			raise GenerationError("correctAnswer is not one of the options")
	return payload.model_dump()


def validate_story(data: Any) -> Dict[str, Any]:
	try:
		return StoryPayload.model_validate(data).model_dump()
	except ValidationError as e:
		raise GenerationError(f"invalid story payload: {e.errors()[0]['msg']}") from e


FALLBACK_TEMPLATES: Dict[str, Dict[str, Any]] = {
	"who": {
		"question": "Who was in this chapter?",
		"instructions": "Think about the people and animals in the chapter. Pick the main character.",
		"real_characters": [{"name": "The main character", "role": "protagonist", "description": "The person the chapter is mostly about."}],
		"decoy_characters": [{"name": "A stranger from another story", "role": "supporting", "description": "Someone who never appears."}],
	},
	"where": {
		"question": "Where did this chapter happen?",
		"instructions": "Think about the places described in the chapter.",
		"real_settings": [{"name": "The place in the chapter", "description": "Where the events happen."}],
		"decoy_settings": [{"name": "Outer space", "description": "A place that is not in this chapter."}],
	},
	"sequence": {
		"question": "What happened first, next and last?",
		"instructions": "Put these parts of the chapter in order.",
		"events": [
			{"id": "beginning", "text": "The beginning of the chapter", "order": 1},
			{"id": "middle", "text": "The middle of the chapter", "order": 2},
			{"id": "end", "text": "The end of the chapter", "order": 3},
		],
	},
	"main-idea": {
		"question": "What is this chapter mostly about?",
		"instructions": "Choose the best answer.",
		"options": [
			{"text": "What the main character does and why", "is_correct": True, "feedback": "Yes! The main idea is what the chapter is mostly about."},
			{"text": "One small detail from the chapter", "is_correct": False, "feedback": "Details help, but the main idea is bigger."},
		],
	},
	"vocabulary": {
		"question": "What does this word mean?",
		"instructions": "Choose the meaning of the word.",
		"words": [{"word": "chapter", "definition": "One part of a book or story", "context_sentence": "We read the first chapter today."}],
		"decoy_definitions": ["A kind of fruit"],
	},
	"predict": {
		"question": "What do you think will happen next?",
		"instructions": "Choose the prediction that makes the most sense.",
		"options": [
			{"text": "The main character keeps trying to reach their goal", "plausibility": 8, "feedback": "Characters usually keep working toward their goal."},
			{"text": "Everyone forgets the whole story", "plausibility": 2, "feedback": "That would not fit the story so far."},
		],
	},
}

FALLBACK_ASSESSMENT: Dict[str, Any] = {
	"passage": (
		"Maya found a small turtle near the pond behind her school. It was hiding under a wet leaf, "
		"and its shell had a tiny crack on one side. Maya carried the turtle to her teacher, Mr. Lee. "
		"He said the crack would heal if the turtle stayed safe and warm for a few days. The class made "
		"a home for it in a glass tank with water, rocks and fresh lettuce. Every morning Maya checked on "
		"the turtle before reading time. After one week the crack was almost gone. On Friday the whole class "
		"walked to the pond together, and Maya gently set the turtle down by the water. It looked back once "
		"and then swam away."
	),
	"questions": [
		{"question": "Where did Maya find the turtle?", "options": ["Near the pond", "In the library", "At the store", "On the bus"], "correctAnswer": "Near the pond", "type": "comprehension"},
		{"question": "What was wrong with the turtle?", "options": ["It was lost", "Its shell had a crack", "It was too cold", "It could not swim"], "correctAnswer": "Its shell had a crack", "type": "comprehension"},
		{"question": "What did the class do on Friday?", "options": ["Took the turtle home", "Let the turtle go at the pond", "Bought a new tank", "Gave the turtle a name"], "correctAnswer": "Let the turtle go at the pond", "type": "comprehension"},
		{"question": "In the story, 'heal' means:", "options": ["To get better", "To break", "To hide", "To swim"], "correctAnswer": "To get better", "type": "vocabulary"},
		{"question": "In the story, 'gently' means:", "options": ["Carefully and softly", "Very fast", "Loudly", "Angrily"], "correctAnswer": "Carefully and softly", "type": "vocabulary"},
	],
}


def fallback_content(activity_type: str) -> Optional[Dict[str, Any]]:
	template = FALLBACK_TEMPLATES.get(activity_type)
	return copy.deepcopy(template) if template is not None else None


def get_generator() -> ContentGenerator:
	return GeminiContentGenerator()
