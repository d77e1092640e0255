"""
Configuration for the School Score Report data engine

Contains input table schemas, header aliases, and the constants used by
the join pipeline and the aggregators.
To accept a new header spelling, simply add it to the alias tuple below.
"""

from dataclasses import dataclass
from typing import Dict, Tuple


@dataclass(frozen=True)
class TableSchema:
    """Declarative description of one input table."""
    name: str
    columns: Dict[str, Tuple[str, ...]]  # canonical field -> accepted headers, in priority order


# =============================================================================
# INPUT TABLE SCHEMAS
# =============================================================================
# Headers are stripped, then matched case-sensitively. First alias found wins.

GRADE_CATALOG_SCHEMA = TableSchema(
    name="grade catalog",
    columns={
        "grade_name": ("年級", "年級名稱", "grade", "gradeName"),
        "grade_code": ("年級代號", "code", "gradeCode"),
    },
)

CLASS_CATALOG_SCHEMA = TableSchema(
    name="class catalog",
    columns={
        "class_name": ("班級", "class", "className"),
        "class_code": ("班級代號", "classCode", "code"),
        "grade_code": ("年級代號", "gradeCode"),
    },
)

STUDENT_ROSTER_SCHEMA = TableSchema(
    name="student roster",
    columns={
        "student_id": ("id", "學號", "studentId"),
        "name": ("姓名", "name"),
        "gender": ("性別", "gender", "姓別"),
    },
)

# Note: in the score table 學號 is the seat number within a class, not the id
SCORE_RECORD_SCHEMA = TableSchema(
    name="score records",
    columns={
        "student_id": ("id", "studentId"),
        "academic_year": ("學年", "academicYear"),
        "semester": ("學期", "semester"),
        "class_name": ("班級", "class", "className"),
        "student_number": ("學號", "studentNumber"),
        "subject": ("科目", "subject"),
        "average_score": ("平均分", "averageScore"),
    },
)

SUBJECT_LIST_SCHEMA = TableSchema(
    name="subject list",
    columns={
        "grade_name": ("年級", "grade", "gradeName"),
        "subject": ("科目", "subject"),
    },
)

# =============================================================================
# DATA FILES
# =============================================================================

DATA_DIR = "data"
CSV_ENCODING = "utf-8-sig"  # tolerates the BOM Excel adds

DATA_FILES = {
    "grades": "gradeCode.csv",
    "classes": "classCode.csv",
    "scores": "averageScores.csv",
    "students": "students.csv",
    "subjects": "subjects.csv",
}

OUTPUT_PATH = "output/school_data.json"

# =============================================================================
# ROSTER NORMALIZATION
# =============================================================================

GENDER_MALE = "Male"
GENDER_FEMALE = "Female"
GENDER_UNKNOWN = "Unknown"

# Compared after strip() + upper()
MALE_ALIASES = {"男", "M", "MALE"}
FEMALE_ALIASES = {"女", "F", "FEMALE"}

UNASSIGNED_CLASS = "unassigned"
UNKNOWN_STUDENT_NAME = "Unknown"

# =============================================================================
# AGGREGATION SETTINGS
# =============================================================================

ALL = "all"  # filter value meaning "no restriction"

# (label, lower, upper), bounds inclusive, applied to the half-up rounded average
SCORE_BINS = [
    ("0-10", 0, 10),
    ("11-20", 11, 20),
    ("21-30", 21, 30),
    ("31-40", 31, 40),
    ("41-50", 41, 50),
    ("51-60", 51, 60),
    ("61-70", 61, 70),
    ("71-80", 71, 80),
    ("81-90", 81, 90),
    ("91-100", 91, 100),
]

PASSING_SCORE = 60.0

# Column headers for the interval student list export
STUDENT_LIST_HEADERS = ["學年", "班級", "學號", "姓名", "平均分數"]
