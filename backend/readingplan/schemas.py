"""Activity content payloads, one tagged variant per activity type.

Generated content is validated against these models before it is cached; the
cached payload is ``model_dump()`` of the variant, so the answer key can be
rebuilt from the stored JSON when responses come in.
"""
from __future__ import annotations
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator


class ContentValidationError(ValueError):
	pass


class Evaluation(BaseModel):
	is_correct: Optional[bool] = None
	score: Optional[float] = None
	feedback: Optional[str] = None


def _norm(value: Any) -> str:
	return str(value).strip().lower()


def _as_list(answer: Any) -> List[str]:
	if answer is None:
		return []
	if isinstance(answer, (list, tuple)):
		return [str(a) for a in answer]
	return [str(answer)]


def _ensure_unique(texts: List[str], what: str) -> None:
	seen = set()
	for text in texts:
		key = _norm(text)
		if key in seen:
			raise ValueError(f"duplicate {what}: {text!r}")
		seen.add(key)


def _set_overlap_score(selected: List[str], expected: List[str]) -> tuple[bool, float]:
	picked = {_norm(s) for s in selected}
	wanted = {_norm(e) for e in expected}
	union = picked | wanted
	score = 100.0 * len(picked & wanted) / len(union) if union else 0.0
	return picked == wanted, round(score, 2)


class Character(BaseModel):
	name: str = Field(min_length=1)
	role: str = "supporting"
	description: str = ""


class Setting(BaseModel):
	name: str = Field(min_length=1)
	description: str = ""


class Event(BaseModel):
	id: str = Field(min_length=1)
	text: str = Field(min_length=1)
	order: int

	@field_validator("id", mode="before")
	@classmethod
	def _stringify_id(cls, v: Any) -> Any:
		return str(v) if isinstance(v, int) else v


class ChoiceOption(BaseModel):
	text: str = Field(min_length=1)
	is_correct: bool = False
	feedback: str = ""


class VocabularyWord(BaseModel):
	word: str = Field(min_length=1)
	definition: str = Field(min_length=1)
	context_sentence: str = ""


class Prediction(BaseModel):
	text: str = Field(min_length=1)
	plausibility: int = Field(ge=1, le=10)
	feedback: str = ""


class WhoContent(BaseModel):
	type: Literal["who"] = "who"
	question: str = "Who are the characters in this chapter?"
	instructions: str = "Pick every character who appears in the chapter."
	real_characters: List[Character] = Field(min_length=1)
	decoy_characters: List[Character] = Field(default_factory=list)

	@model_validator(mode="after")
	def _unique_names(self) -> "WhoContent":
		_ensure_unique([c.name for c in self.real_characters + self.decoy_characters], "character")
		return self

	def evaluate(self, question: str, answer: Any) -> Evaluation:
		correct, score = _set_overlap_score(_as_list(answer), [c.name for c in self.real_characters])
		feedback = "You found all the characters!" if correct else "Look back at the chapter to see who was there."
		return Evaluation(is_correct=correct, score=score, feedback=feedback)


class WhereContent(BaseModel):
	type: Literal["where"] = "where"
	question: str = "Where does this chapter take place?"
	instructions: str = "Pick every place where the chapter happens."
	real_settings: List[Setting] = Field(min_length=1)
	decoy_settings: List[Setting] = Field(default_factory=list)

	@model_validator(mode="after")
	def _unique_names(self) -> "WhereContent":
		_ensure_unique([s.name for s in self.real_settings + self.decoy_settings], "setting")
		return self

	def evaluate(self, question: str, answer: Any) -> Evaluation:
		correct, score = _set_overlap_score(_as_list(answer), [s.name for s in self.real_settings])
		feedback = "Great job spotting the settings!" if correct else "Some places are missing or were not in the chapter."
		return Evaluation(is_correct=correct, score=score, feedback=feedback)


class SequenceContent(BaseModel):
	type: Literal["sequence"] = "sequence"
	question: str = "What happened in this chapter? Put the events in order."
	instructions: str = "Drag the events into the order they happened."
	events: List[Event] = Field(min_length=2)

	@model_validator(mode="after")
	def _unique_events(self) -> "SequenceContent":
		_ensure_unique([e.text for e in self.events], "event")
		_ensure_unique([e.id for e in self.events], "event id")
		if len({e.order for e in self.events}) != len(self.events):
			raise ValueError("event order values must be distinct")
		return self

	def correct_order(self) -> List[str]:
		return [e.id for e in sorted(self.events, key=lambda e: e.order)]

	def evaluate(self, question: str, answer: Any) -> Evaluation:
		given = _as_list(answer)
		expected = self.correct_order()
		in_place = sum(1 for g, e in zip(given, expected) if g == e)
		correct = given == expected
		score = round(100.0 * in_place / len(expected), 2)
		feedback = "Perfect order!" if correct else f"{in_place} of {len(expected)} events are in the right place."
		return Evaluation(is_correct=correct, score=score, feedback=feedback)


class MainIdeaContent(BaseModel):
	type: Literal["main-idea"] = "main-idea"
	question: str = "What is the main idea of this chapter?"
	instructions: str = "Choose the sentence that best tells what the chapter is mostly about."
	options: List[ChoiceOption] = Field(min_length=2)

	@model_validator(mode="after")
	def _one_correct(self) -> "MainIdeaContent":
		_ensure_unique([o.text for o in self.options], "option")
		if sum(1 for o in self.options if o.is_correct) != 1:
			raise ValueError("exactly one option must be correct")
		return self

	def evaluate(self, question: str, answer: Any) -> Evaluation:
		chosen = _find_option(self.options, answer)
		if chosen is None:
			return Evaluation(is_correct=False, score=0.0, feedback="Pick one of the choices.")
		return Evaluation(
			is_correct=chosen.is_correct,
			score=100.0 if chosen.is_correct else 0.0,
			feedback=chosen.feedback or None,
		)


class VocabularyContent(BaseModel):
	type: Literal["vocabulary"] = "vocabulary"
	question: str = "Match each word with its meaning."
	instructions: str = "Choose the meaning of each word as it is used in the story."
	words: List[VocabularyWord] = Field(min_length=1)
	decoy_definitions: List[str] = Field(default_factory=list)

	@model_validator(mode="after")
	def _unique_entries(self) -> "VocabularyContent":
		_ensure_unique([w.word for w in self.words], "word")
		_ensure_unique([w.definition for w in self.words] + list(self.decoy_definitions), "definition")
		return self

	def evaluate(self, question: str, answer: Any) -> Evaluation:
		target = next((w for w in self.words if _norm(w.word) == _norm(question)), None)
		if target is None:
			return Evaluation()
		correct = answer is not None and _norm(answer) == _norm(target.definition)
		feedback = None if correct else f'"{target.word}" means: {target.definition}'
		return Evaluation(is_correct=correct, score=100.0 if correct else 0.0, feedback=feedback)


class PredictContent(BaseModel):
	type: Literal["predict"] = "predict"
	question: str = "What do you think will happen next?"
	instructions: str = "Choose the prediction that makes the most sense."
	options: List[Prediction] = Field(min_length=2)

	@model_validator(mode="after")
	def _unique_options(self) -> "PredictContent":
		_ensure_unique([o.text for o in self.options], "prediction")
		return self

	def evaluate(self, question: str, answer: Any) -> Evaluation:
		# Predictions have no wrong answer; the score reflects plausibility.
		chosen = _find_option(self.options, answer)
		if chosen is None:
			return Evaluation(feedback="Pick one of the predictions.")
		return Evaluation(score=chosen.plausibility * 10.0, feedback=chosen.feedback or None)


def _find_option(options: List[Any], answer: Any) -> Optional[Any]:
	if isinstance(answer, int) and not isinstance(answer, bool):
		return options[answer] if 0 <= answer < len(options) else None
	if answer is None:
		return None
	return next((o for o in options if _norm(o.text) == _norm(answer)), None)


ActivityPayload = Annotated[
	Union[WhoContent, WhereContent, SequenceContent, MainIdeaContent, VocabularyContent, PredictContent],
	Field(discriminator="type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(ActivityPayload)


def parse_activity_content(activity_type: str, payload: Any):
	"""Validate a raw payload for ``activity_type``; raises ContentValidationError."""
	if not isinstance(payload, dict):
		raise ContentValidationError(f"{activity_type} content must be a JSON object")
	try:
		return _payload_adapter.validate_python({**payload, "type": activity_type})
	except ValidationError as e:
		raise ContentValidationError(f"invalid {activity_type} content: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e
