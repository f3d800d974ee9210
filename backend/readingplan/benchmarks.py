from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
import logging

from sqlalchemy.orm import Session

from .models import Benchmark

logger = logging.getLogger(__name__)


# grade: (wpm_min, wpm_max, comprehension_min, comprehension_max)
DEFAULT_BENCHMARKS: Dict[int, tuple] = {
	1: (30, 70, 60, 85),
	2: (60, 110, 60, 85),
	3: (80, 140, 60, 85),
	4: (100, 150, 65, 90),
	5: (110, 160, 65, 90),
	6: (120, 170, 65, 90),
	7: (130, 180, 65, 90),
	8: (140, 190, 65, 90),
	9: (150, 200, 70, 95),
	10: (160, 210, 70, 95),
	11: (170, 220, 70, 95),
	12: (180, 230, 70, 95),
}


@dataclass(frozen=True)
class BenchmarkRange:
	grade: int
	wpm_min: float
	wpm_max: float
	comprehension_min: float
	comprehension_max: float

	@classmethod
	def from_row(cls, row: Benchmark) -> "BenchmarkRange":
		return cls(
			grade=row.grade,
			wpm_min=row.wpm_min,
			wpm_max=row.wpm_max,
			comprehension_min=row.comprehension_min,
			comprehension_max=row.comprehension_max,
		)

	def to_dict(self) -> dict:
		return {
			"grade": self.grade,
			"wpm_min": self.wpm_min,
			"wpm_max": self.wpm_max,
			"comprehension_min": self.comprehension_min,
			"comprehension_max": self.comprehension_max,
		}


class BenchmarkTable:
	"""Read-only snapshot of the per-grade reference ranges."""

	def __init__(self, ranges: Iterable[BenchmarkRange]) -> None:
		self._by_grade = {r.grade: r for r in ranges}

	@classmethod
	def load(cls, db: Session) -> "BenchmarkTable":
		return cls(BenchmarkRange.from_row(row) for row in db.query(Benchmark).all())

	@classmethod
	def defaults(cls) -> "BenchmarkTable":
		return cls(BenchmarkRange(grade, *values) for grade, values in DEFAULT_BENCHMARKS.items())

	def get(self, grade: int) -> Optional[BenchmarkRange]:
		return self._by_grade.get(grade)

	def all(self) -> List[BenchmarkRange]:
		return [self._by_grade[g] for g in sorted(self._by_grade)]


def seed_benchmarks(db: Session) -> int:
	existing = {g for (g,) in db.query(Benchmark.grade).all()}
	added = 0
	for grade, (wpm_min, wpm_max, comp_min, comp_max) in DEFAULT_BENCHMARKS.items():
		if grade in existing:
			continue
		db.add(Benchmark(
			grade=grade,
			wpm_min=wpm_min,
			wpm_max=wpm_max,
			comprehension_min=comp_min,
			comprehension_max=comp_max,
		))
		added += 1
	if added:
		db.commit()
		logger.info("Seeded %d benchmark rows", added)
	return added
