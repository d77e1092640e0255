"""
Data models for the School Score Report engine

Every pipeline stage returns one of these frozen dataclasses. Stages never
mutate their inputs; the next stage receives the previous result explicitly.
"""

from dataclasses import dataclass, asdict
from typing import Dict, List, Any, Optional, Tuple, Mapping

import pandas as pd

from config import ALL, UNKNOWN_STUDENT_NAME


# ==================== REFERENCE CATALOG ====================

@dataclass(frozen=True)
class GradeEntry:
    code: str
    name: str


@dataclass(frozen=True)
class ClassEntry:
    code: str
    name: str
    grade_code: str


@dataclass(frozen=True)
class ReferenceCatalog:
    """Resolved grade and class lookups plus their display order."""
    grades: Dict[str, GradeEntry]     # grade code -> entry
    classes: Dict[str, ClassEntry]    # class code -> entry
    grade_order: Tuple[str, ...]      # grade names, first seen
    class_order: Tuple[str, ...]      # class names, first seen

    def class_code_for(self, class_name: str) -> Optional[str]:
        """Reverse lookup by exact class name; first code seen wins."""
        for code, entry in self.classes.items():
            if entry.name == class_name:
                return code
        return None

    def grade_code_for(self, class_code: str) -> Optional[str]:
        entry = self.classes.get(class_code)
        return entry.grade_code if entry else None

    def grade_name_for(self, grade_code: str) -> Optional[str]:
        entry = self.grades.get(grade_code)
        return entry.name if entry else None


# ==================== INPUT TABLES ====================

@dataclass(frozen=True)
class Table:
    """Rows of one input table, keyed by canonical field names."""
    name: str
    rows: Tuple[Mapping[str, str], ...]

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class Diagnostic:
    """A rejected input row and why it was rejected."""
    table: str
    row_number: int               # 1-based data row, header excluded
    reason: str
    field: Optional[str] = None
    student_id: Optional[str] = None
    subject: Optional[str] = None
    academic_year: Optional[str] = None

    def __str__(self) -> str:
        context = ", ".join(
            f"{label}={value}" for label, value in (
                ("field", self.field),
                ("id", self.student_id),
                ("subject", self.subject),
                ("year", self.academic_year),
            ) if value
        )
        message = f"[{self.table} row {self.row_number}] {self.reason}"
        return f"{message} ({context})" if context else message


# ==================== SCORE RECORDS ====================

@dataclass(frozen=True)
class ScoreRecord:
    """One joined score row: a student's average in one subject for one term."""
    student_id: str
    academic_year: str
    semester: int
    class_name: str
    grade_level: str      # resolved through class -> grade code -> grade name
    student_number: str
    subject: str
    average_score: float


RECORD_COLUMNS = [
    "student_id", "academic_year", "semester", "class_name",
    "grade_level", "student_number", "subject", "average_score",
]


@dataclass(frozen=True)
class ScoreRecordSet:
    """Ordered, immutable collection of joined score records."""
    records: Tuple[ScoreRecord, ...] = ()

    def __iter__(self):
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    def years(self) -> List[str]:
        """Sorted distinct academic years."""
        return sorted({r.academic_year for r in self.records})

    def for_student(self, student_id: str) -> List[ScoreRecord]:
        return [r for r in self.records if r.student_id == student_id]

    def to_frame(self) -> pd.DataFrame:
        """DataFrame view with one column per ScoreRecord field."""
        frame = pd.DataFrame([asdict(r) for r in self.records], columns=RECORD_COLUMNS)
        frame["average_score"] = frame["average_score"].astype(float)
        return frame


@dataclass(frozen=True)
class JoinResult:
    records: ScoreRecordSet
    diagnostics: Tuple[Diagnostic, ...] = ()


# ==================== ROSTER ====================

@dataclass(frozen=True)
class StudentProfile:
    student_id: str
    name: str
    gender: str           # Male | Female | Unknown
    current_class: str    # derived from the latest score record


@dataclass(frozen=True)
class RosterResult:
    students: Dict[str, StudentProfile]
    diagnostics: Tuple[Diagnostic, ...] = ()


@dataclass(frozen=True)
class SubjectCatalog:
    by_grade: Dict[str, Tuple[str, ...]]
    subject_order: Tuple[str, ...]
    diagnostics: Tuple[Diagnostic, ...] = ()


# ==================== FILTERS ====================

def _selected(value: Optional[str]) -> Optional[str]:
    """Treat None, '' and 'all' as no restriction."""
    if value is None or value == "" or value == ALL:
        return None
    return value


@dataclass(frozen=True)
class ScoreFilter:
    """Active filter selection; every field None means 'all'."""
    subject: Optional[str] = None
    academic_year: Optional[str] = None
    grade: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "subject", _selected(self.subject))
        object.__setattr__(self, "academic_year", _selected(self.academic_year))
        object.__setattr__(self, "grade", _selected(self.grade))

    def apply(self, records) -> List[ScoreRecord]:
        return [
            r for r in records
            if (self.subject is None or r.subject == self.subject)
            and (self.academic_year is None or r.academic_year == self.academic_year)
            and (self.grade is None or r.grade_level == self.grade)
        ]


# ==================== AGGREGATES ====================

@dataclass(frozen=True)
class BinStudent:
    student_id: str
    name: str
    class_name: str
    student_number: str
    academic_year: str    # year the class/number details come from
    average: float        # exact final average, never rounded


@dataclass(frozen=True)
class HistogramBin:
    label: str
    lower: int
    upper: int
    count: int
    students: Tuple[BinStudent, ...] = ()


@dataclass(frozen=True)
class BoxStat:
    """Five-number summary plus mean; all None when count is 0."""
    min: Optional[float]
    q1: Optional[float]
    median: Optional[float]
    q3: Optional[float]
    max: Optional[float]
    mean: Optional[float]
    count: int
    grade: Optional[str] = None


@dataclass(frozen=True)
class CategoryStat:
    category: str
    average: float
    count: int            # number of students, not rows
    min: float
    max: float


@dataclass(frozen=True)
class TrendPoint:
    academic_year: str
    value: Optional[float]   # None renders as a gap, not a dip


@dataclass(frozen=True)
class TrendSeries:
    label: str
    points: Tuple[TrendPoint, ...]

    @property
    def values(self) -> List[Optional[float]]:
        return [p.value for p in self.points]


@dataclass(frozen=True)
class SubjectStat:
    subject: str
    average: float
    count: int
    pass_rate: float      # percent of students with mean >= PASSING_SCORE


# ==================== PAYLOAD ====================

@dataclass(frozen=True)
class SchoolDataset:
    """
    Complete normalized payload handed to the reporting layer.

    Holds no precomputed aggregates: consumers call the functions in
    aggregations.py per filter selection.
    """
    records: ScoreRecordSet
    roster: Dict[str, StudentProfile]
    catalog: ReferenceCatalog
    subjects: SubjectCatalog
    years: Tuple[str, ...]
    diagnostics: Tuple[Diagnostic, ...] = ()

    @property
    def grade_order(self) -> Tuple[str, ...]:
        return self.catalog.grade_order

    @property
    def class_order(self) -> Tuple[str, ...]:
        return self.catalog.class_order

    @property
    def subject_order(self) -> Tuple[str, ...]:
        return self.subjects.subject_order

    def student_name(self, student_id: str) -> str:
        profile = self.roster.get(student_id)
        return profile.name if profile else UNKNOWN_STUDENT_NAME

    def to_dict(self) -> Dict[str, Any]:
        """Plain JSON-compatible structure for the presentation layer."""
        return {
            "records": [asdict(r) for r in self.records],
            "students": {sid: asdict(p) for sid, p in self.roster.items()},
            "grade_code_map": {code: g.name for code, g in self.catalog.grades.items()},
            "class_code_map": {code: c.name for code, c in self.catalog.classes.items()},
            "class_grade_map": {code: c.grade_code for code, c in self.catalog.classes.items()},
            "grade_order": list(self.grade_order),
            "class_order": list(self.class_order),
            "subjects": {grade: list(names) for grade, names in self.subjects.by_grade.items()},
            "subject_order": list(self.subject_order),
            "years": list(self.years),
            "diagnostics": [asdict(d) for d in self.diagnostics],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchoolDataset":
        grade_codes = data["grade_code_map"]
        catalog = ReferenceCatalog(
            grades={code: GradeEntry(code, name) for code, name in grade_codes.items()},
            classes={
                code: ClassEntry(code, name, data["class_grade_map"][code])
                for code, name in data["class_code_map"].items()
            },
            grade_order=tuple(data["grade_order"]),
            class_order=tuple(data["class_order"]),
        )
        return cls(
            records=ScoreRecordSet(tuple(ScoreRecord(**r) for r in data["records"])),
            roster={sid: StudentProfile(**p) for sid, p in data["students"].items()},
            catalog=catalog,
            subjects=SubjectCatalog(
                by_grade={grade: tuple(names) for grade, names in data["subjects"].items()},
                subject_order=tuple(data["subject_order"]),
            ),
            years=tuple(data["years"]),
            diagnostics=tuple(Diagnostic(**d) for d in data.get("diagnostics", [])),
        )
