from __future__ import annotations
from datetime import datetime
from sqlalchemy import (
	Boolean,
	Column,
	Date,
	DateTime,
	Float,
	ForeignKey,
	Integer,
	JSON,
	String,
	Text,
	UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .db import Base


ACTIVITY_TYPES = ("who", "where", "sequence", "main-idea", "vocabulary", "predict")

PLAN_GENERATING = "generating"
PLAN_ACTIVE = "active"
PLAN_COMPLETED = "completed"
PLAN_FAILED = "failed"

DAY_LOCKED = "locked"
DAY_AVAILABLE = "available"
DAY_COMPLETE = "complete"

PROGRESS_NOT_STARTED = "not_started"
PROGRESS_IN_PROGRESS = "in_progress"
PROGRESS_COMPLETED = "completed"

GENERATION_PENDING = "pending"
GENERATION_READY = "ready"
GENERATION_FAILED = "failed"

ASSESSMENT_NOT_STARTED = "not_started"
ASSESSMENT_IN_PROGRESS = "in_progress"
ASSESSMENT_COMPLETED = "completed"


class Parent(Base):
	__tablename__ = "parents"
	id = Column(Integer, primary_key=True)
	email = Column(String(256), unique=True, index=True, nullable=False)
	name = Column(String(128), nullable=False)
	password_hash = Column(String(256), nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	students = relationship("Student", back_populates="parent", cascade="all, delete-orphan")


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# jti of the issued token
	session_id = Column(String(64), primary_key=True)
	parent_id = Column(Integer, ForeignKey("parents.id"), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Student(Base):
	__tablename__ = "students"
	id = Column(Integer, primary_key=True)
	parent_id = Column(Integer, ForeignKey("parents.id"), nullable=False, index=True)
	name = Column(String(128), nullable=False)
	birthday = Column(Date, nullable=False)
	grade_level = Column(Integer, nullable=False)
	interests = Column(JSON, nullable=False, default=list)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	parent = relationship("Parent", back_populates="students")


class Benchmark(Base):
	__tablename__ = "benchmarks"
	id = Column(Integer, primary_key=True)
	grade = Column(Integer, unique=True, nullable=False)
	wpm_min = Column(Float, nullable=False)
	wpm_max = Column(Float, nullable=False)
	comprehension_min = Column(Float, nullable=False)
	comprehension_max = Column(Float, nullable=False)


class Assessment(Base):
	__tablename__ = "assessments"
	id = Column(Integer, primary_key=True)
	student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
	status = Column(String(16), default=ASSESSMENT_NOT_STARTED, nullable=False)
	passage = Column(Text, nullable=False)
	passage_word_count = Column(Integer, nullable=False)
	# [{"question", "options", "correctAnswer", "type"}]
	questions = Column(JSON, nullable=False, default=list)
	# {"<question index>": "<answer>"}
	answers = Column(JSON, nullable=True)
	reading_time = Column(Float, nullable=True)
	error_count = Column(Integer, nullable=True)
	words_per_minute = Column(Float, nullable=True)
	accuracy = Column(Float, nullable=True)
	fluency_score = Column(Float, nullable=True)
	comprehension_score = Column(Float, nullable=True)
	composite_score = Column(Float, nullable=True)
	reading_level_label = Column(String(64), nullable=True)
	scored_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	student = relationship("Student")


class Plan(Base):
	__tablename__ = "plans"
	id = Column(Integer, primary_key=True)
	student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
	name = Column(String(100), nullable=False)
	theme = Column(String(50), nullable=False)
	status = Column(String(16), default=PLAN_GENERATING, nullable=False)
	# student_id while generating/active, NULL afterwards: one live plan per student
	active_slot = Column(Integer, unique=True, nullable=True)
	failure_reason = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	student = relationship("Student")
	story = relationship("Story", back_populates="plan", uselist=False, cascade="all, delete-orphan")
	days = relationship("Day", back_populates="plan", order_by="Day.day_index", cascade="all, delete-orphan")


class Story(Base):
	__tablename__ = "stories"
	id = Column(Integer, primary_key=True)
	plan_id = Column(Integer, ForeignKey("plans.id"), unique=True, nullable=False)
	title = Column(String(256), nullable=False)
	themes = Column(JSON, nullable=False, default=list)
	part1 = Column(Text, nullable=False)
	part2 = Column(Text, nullable=False)
	part3 = Column(Text, nullable=False)
	vocabulary = Column(JSON, nullable=False, default=list)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	plan = relationship("Plan", back_populates="story")

	def part(self, day_index: int) -> str:
		return {1: self.part1, 2: self.part2, 3: self.part3}.get(day_index, "")


class Day(Base):
	__tablename__ = "days"
	__table_args__ = (UniqueConstraint("plan_id", "day_index", name="uq_day_plan_index"),)
	id = Column(Integer, primary_key=True)
	plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)
	day_index = Column(Integer, nullable=False)
	state = Column(String(16), default=DAY_LOCKED, nullable=False)
	completed_at = Column(DateTime, nullable=True)

	plan = relationship("Plan", back_populates="days")


class ActivityContent(Base):
	__tablename__ = "activity_content"
	__table_args__ = (UniqueConstraint("plan_id", "day_index", "activity_type", name="uq_content_key"),)
	id = Column(Integer, primary_key=True)
	plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)
	day_index = Column(Integer, nullable=False)
	activity_type = Column(String(32), nullable=False)
	content = Column(JSON, nullable=True)
	student_age = Column(Integer, nullable=False)
	# sha256 of the generation inputs (story text, activity type, student age)
	content_hash = Column(String(64), nullable=True)
	expires_at = Column(DateTime, nullable=True)
	generation_status = Column(String(16), default=GENERATION_PENDING, nullable=False)
	lease_token = Column(String(64), nullable=True)
	lease_expires_at = Column(DateTime, nullable=True)
	last_error = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ActivityProgress(Base):
	__tablename__ = "activity_progress"
	__table_args__ = (
		UniqueConstraint("student_id", "plan_id", "day_index", "activity_type", name="uq_progress_key"),
	)
	id = Column(Integer, primary_key=True)
	student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
	plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)
	day_index = Column(Integer, nullable=False)
	activity_type = Column(String(32), nullable=False)
	status = Column(String(16), default=PROGRESS_NOT_STARTED, nullable=False)
	started_at = Column(DateTime, nullable=True)
	completed_at = Column(DateTime, nullable=True)
	time_spent = Column(Integer, nullable=True)
	attempts = Column(Integer, default=0, nullable=False)
	version = Column(Integer, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	responses = relationship(
		"ActivityResponse",
		back_populates="progress",
		order_by="ActivityResponse.created_at",
		cascade="all, delete-orphan",
	)

	__mapper_args__ = {"version_id_col": version}


class ActivityResponse(Base):
	__tablename__ = "activity_responses"
	__table_args__ = (UniqueConstraint("progress_id", "question", name="uq_response_question"),)
	id = Column(Integer, primary_key=True)
	progress_id = Column(Integer, ForeignKey("activity_progress.id"), nullable=False, index=True)
	question = Column(String(512), nullable=False)
	answer = Column(JSON, nullable=True)
	is_correct = Column(Boolean, nullable=True)
	feedback = Column(Text, nullable=True)
	score = Column(Float, nullable=True)
	time_spent = Column(Integer, nullable=True)
	# client-side timestamp of the answer, used to order replays
	answered_at = Column(DateTime, nullable=True)
	# every distinct answer seen for this question: [{"answer", "answered_at"}]
	history = Column(JSON, nullable=False, default=list)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	progress = relationship("ActivityProgress", back_populates="responses")
