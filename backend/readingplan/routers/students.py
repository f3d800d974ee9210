from __future__ import annotations
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .auth import get_current_parent
from ..benchmarks import DEFAULT_BENCHMARKS
from ..db import get_db
from ..models import Parent, Plan, Student


router = APIRouter(prefix="/students", tags=["students"])

MIN_STUDENT_AGE = 5
MAX_STUDENT_AGE = 18


def student_age(student: Student, today: Optional[date] = None) -> int:
	"""Whole years since the birthday, clamped to the range content is written for."""
	today = today or date.today()
	born = student.birthday
	years = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
	return max(MIN_STUDENT_AGE, min(MAX_STUDENT_AGE, years))


def get_owned_student(db: Session, parent: Parent, student_id: int) -> Student:
	student = db.get(Student, student_id)
	if student is None or student.parent_id != parent.id:
		raise HTTPException(status_code=404, detail="Student not found")
	return student


def plan_summary(plan: Plan) -> Dict[str, Any]:
	return {
		"id": plan.id,
		"student_id": plan.student_id,
		"name": plan.name,
		"theme": plan.theme,
		"status": plan.status,
		"failure_reason": plan.failure_reason,
		"created_at": plan.created_at,
		"days": [
			{"day_index": d.day_index, "state": d.state, "completed_at": d.completed_at}
			for d in plan.days
		],
	}


class StudentCreate(BaseModel):
	name: str = Field(min_length=1, max_length=128)
	birthday: date
	grade_level: int
	interests: List[str] = Field(default_factory=list)


class StudentOut(BaseModel):
	id: int
	name: str
	birthday: date
	grade_level: int
	age: int
	interests: List[str]
	created_at: datetime


def _student_out(student: Student) -> StudentOut:
	return StudentOut(
		id=student.id,
		name=student.name,
		birthday=student.birthday,
		grade_level=student.grade_level,
		age=student_age(student),
		interests=list(student.interests or []),
		created_at=student.created_at,
	)


@router.post("", status_code=201, response_model=StudentOut)
def create_student(req: StudentCreate, parent: Parent = Depends(get_current_parent), db: Session = Depends(get_db)):
	if req.grade_level not in DEFAULT_BENCHMARKS:
		raise HTTPException(status_code=400, detail=f"grade_level must be between {min(DEFAULT_BENCHMARKS)} and {max(DEFAULT_BENCHMARKS)}")
	if req.birthday >= date.today():
		raise HTTPException(status_code=400, detail="birthday must be in the past")
	interests = [i.strip() for i in req.interests if i and i.strip()]
	student = Student(
		parent_id=parent.id,
		name=req.name.strip(),
		birthday=req.birthday,
		grade_level=req.grade_level,
		interests=interests,
	)
	db.add(student)
	db.commit()
	return _student_out(student)


@router.get("", response_model=List[StudentOut])
def list_students(parent: Parent = Depends(get_current_parent), db: Session = Depends(get_db)):
	rows = db.query(Student).filter(Student.parent_id == parent.id).order_by(Student.id).all()
	return [_student_out(s) for s in rows]


@router.get("/{student_id}", response_model=StudentOut)
def get_student(student_id: int, parent: Parent = Depends(get_current_parent), db: Session = Depends(get_db)):
	return _student_out(get_owned_student(db, parent, student_id))


@router.get("/{student_id}/plan")
def get_current_plan(student_id: int, parent: Parent = Depends(get_current_parent), db: Session = Depends(get_db)):
	"""Most recent plan for the student; clients poll this while a plan is generating."""
	student = get_owned_student(db, parent, student_id)
	plan = (
		db.query(Plan)
		.filter(Plan.student_id == student.id)
		.order_by(Plan.created_at.desc(), Plan.id.desc())
		.first()
	)
	if plan is None:
		raise HTTPException(status_code=404, detail="No plan yet for this student")
	return plan_summary(plan)
