import asyncio
import copy
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from readingplan.benchmarks import seed_benchmarks
from readingplan.db import Base, get_db, get_session_factory
from readingplan.generator import GenerationError, get_generator
from readingplan.main import app
from readingplan.models import Parent, Plan, PLAN_ACTIVE, Story, Student
from readingplan.progression import create_days
from readingplan.settings import settings


STORY = {
	"title": "Milo and the Lighthouse",
	"themes": ["friendship", "the sea"],
	"part1": "Milo the cat lived at the top of an old lighthouse with Grandma Rose. Every night the beacon turned.",
	"part2": "One stormy night the beacon went dark. Milo climbed the stairs to find out why.",
	"part3": "Milo and Grandma Rose fixed the lamp just in time, and the fishing boat came safely home.",
	"vocabulary": ["beacon", "stormy", "lamp"],
}

ASSESSMENT = {
	"passage": "Sam has a red kite. On windy days Sam runs to the hill and lets the kite fly high above the trees. "
	"One day the string broke and the kite landed in a tall tree. Sam asked a neighbor for help, and together "
	"they used a long ladder to bring the kite back down.",
	"questions": [
		{"question": "What color is the kite?", "options": ["Red", "Blue", "Green", "Yellow"], "correctAnswer": "Red", "type": "comprehension"},
		{"question": "Where did the kite land?", "options": ["In a pond", "In a tree", "On a roof", "On the road"], "correctAnswer": "In a tree", "type": "comprehension"},
		{"question": "Who helped Sam?", "options": ["A teacher", "A neighbor", "A dog", "Nobody"], "correctAnswer": "A neighbor", "type": "comprehension"},
		{"question": "'Windy' means:", "options": ["With lots of wind", "Very hot", "Rainy", "Quiet"], "correctAnswer": "With lots of wind", "type": "vocabulary"},
		{"question": "A 'ladder' is used to:", "options": ["Climb up", "Cook food", "Swim", "Sleep"], "correctAnswer": "Climb up", "type": "vocabulary"},
	],
}

ACTIVITY_PAYLOADS = {
	"who": {
		"question": "Who is in this chapter?",
		"instructions": "Pick every character.",
		"real_characters": [
			{"name": "Milo", "role": "protagonist", "description": "A curious cat"},
			{"name": "Grandma Rose", "role": "supporting", "description": "The lighthouse keeper"},
		],
		"decoy_characters": [{"name": "Captain Hook", "role": "antagonist", "description": "A pirate"}],
	},
	"where": {
		"question": "Where does this chapter happen?",
		"instructions": "Pick every place.",
		"real_settings": [{"name": "The lighthouse", "description": "Tall and white"}],
		"decoy_settings": [{"name": "The desert", "description": "Hot and dry"}],
	},
	"sequence": {
		"question": "Put the events in order.",
		"instructions": "Drag to reorder.",
		"events": [
			{"id": "e1", "text": "The beacon turns", "order": 1},
			{"id": "e2", "text": "The beacon goes dark", "order": 2},
			{"id": "e3", "text": "Milo climbs the stairs", "order": 3},
		],
	},
	"main-idea": {
		"question": "What is this chapter mostly about?",
		"instructions": "Choose one.",
		"options": [
			{"text": "Milo helps keep the lighthouse working", "is_correct": True, "feedback": "Yes!"},
			{"text": "Milo eats fish", "is_correct": False, "feedback": "That is only a detail."},
		],
	},
	"vocabulary": {
		"question": "Match the words.",
		"instructions": "Choose the meaning.",
		"words": [{"word": "beacon", "definition": "A light that guides ships", "context_sentence": "Every night the beacon turned."}],
		"decoy_definitions": ["A kind of boat"],
	},
	"predict": {
		"question": "What happens next?",
		"instructions": "Choose the best prediction.",
		"options": [
			{"text": "Milo finds out why the light went dark", "plausibility": 8, "feedback": "Good thinking!"},
			{"text": "Milo flies to the moon", "plausibility": 1, "feedback": "That would not fit the story."},
		],
	},
}


class FakeGenerator:
	"""Scripted stand-in for the Gemini generator that records every call."""

	def __init__(self):
		self.activity_calls = []
		self.story_calls = 0
		self.assessment_calls = 0
		self.fail_activities = False
		self.fail_story = False
		self.fail_assessment = False
		self.activity_override = None
		self.delay = 0.0

	async def generate_activity(self, request):
		self.activity_calls.append(request)
		if self.delay:
			await asyncio.sleep(self.delay)
		if self.fail_activities:
			raise GenerationError("scripted activity failure")
		if self.activity_override is not None:
			return copy.deepcopy(self.activity_override)
		return copy.deepcopy(ACTIVITY_PAYLOADS[request.activity_type])

	async def generate_story(self, *, student_name, student_age, grade_level, interests, theme):
		self.story_calls += 1
		if self.fail_story:
			raise GenerationError("scripted story failure")
		return copy.deepcopy(STORY)

	async def generate_assessment(self, *, grade_level):
		self.assessment_calls += 1
		if self.fail_assessment:
			raise GenerationError("scripted assessment failure")
		return copy.deepcopy(ASSESSMENT)


@pytest.fixture(autouse=True)
def fast_generation(monkeypatch):
	# no backoff sleeps, short waits
	monkeypatch.setattr(settings, "generation_backoff_min_seconds", 0.0)
	monkeypatch.setattr(settings, "generation_backoff_max_seconds", 0.0)
	monkeypatch.setattr(settings, "generation_poll_seconds", 0.01)
	monkeypatch.setattr(settings, "generation_wait_seconds", 2.0)
	monkeypatch.setattr(settings, "generation_timeout_seconds", 2.0)


@pytest.fixture
def engine(tmp_path):
	eng = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}, future=True)
	Base.metadata.create_all(bind=eng)
	yield eng
	eng.dispose()


@pytest.fixture
def session_factory(engine):
	factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
	with factory() as db:
		seed_benchmarks(db)
	return factory


@pytest.fixture
def db(session_factory):
	session = session_factory()
	yield session
	session.close()


@pytest.fixture
def generator():
	return FakeGenerator()


@pytest.fixture
def client(session_factory, generator):
	def _get_db():
		db = session_factory()
		try:
			yield db
		finally:
			db.close()

	app.dependency_overrides[get_db] = _get_db
	app.dependency_overrides[get_session_factory] = lambda: session_factory
	app.dependency_overrides[get_generator] = lambda: generator
	yield TestClient(app)
	app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client):
	client.post("/auth/register", json={"email": "parent@example.com", "name": "Pat", "password": "s3cret-pass"})
	r = client.post("/auth/token", data={"username": "parent@example.com", "password": "s3cret-pass"})
	assert r.status_code == 200, r.text
	return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def student_id(client, auth_headers):
	r = client.post(
		"/students",
		json={"name": "Ava", "birthday": "2017-03-14", "grade_level": 3, "interests": ["cats", "the sea"]},
		headers=auth_headers,
	)
	assert r.status_code == 201, r.text
	return r.json()["id"]


@pytest.fixture
def active_plan(db):
	"""A parent, a student and an active three-day plan with its story, built directly in the DB."""
	parent = Parent(email="direct@example.com", name="Dana", password_hash="x")
	db.add(parent)
	db.flush()
	student = Student(parent_id=parent.id, name="Leo", birthday=date(2016, 6, 1), grade_level=3, interests=["cats"])
	db.add(student)
	db.flush()
	plan = Plan(student_id=student.id, name="Lighthouse week", theme="sea", status=PLAN_ACTIVE, active_slot=student.id)
	db.add(plan)
	db.flush()
	db.add(Story(plan_id=plan.id, **STORY))
	create_days(db, plan)
	db.commit()
	return plan
