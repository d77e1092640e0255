"""
School Score Report Data Loader - CSV Edition

Loads the school's reference catalogs, score records, roster and subject
list from CSVs and resolves them into one normalized, immutable dataset.

Pipeline order (each stage needs the full output of the previous one):
- Reference catalogs: grade code -> grade name, class code -> class name + grade code
- Score records: each row's class -> grade chain resolved to a grade name
- Roster: each student's current class derived from their latest score record
- Subject list: per-grade subjects and the global subject display order

Broken catalogs abort the run. Bad score/roster rows are skipped and
reported as Diagnostics alongside each stage's result.
"""

import json
from pathlib import Path
from typing import Dict, List, Any, Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from config import (
    TableSchema,
    GRADE_CATALOG_SCHEMA,
    CLASS_CATALOG_SCHEMA,
    STUDENT_ROSTER_SCHEMA,
    SCORE_RECORD_SCHEMA,
    SUBJECT_LIST_SCHEMA,
    DATA_DIR,
    DATA_FILES,
    CSV_ENCODING,
    OUTPUT_PATH,
    GENDER_MALE,
    GENDER_FEMALE,
    GENDER_UNKNOWN,
    MALE_ALIASES,
    FEMALE_ALIASES,
    UNASSIGNED_CLASS,
)
from models import (
    Table,
    Diagnostic,
    GradeEntry,
    ClassEntry,
    ReferenceCatalog,
    ScoreRecord,
    ScoreRecordSet,
    JoinResult,
    StudentProfile,
    RosterResult,
    SubjectCatalog,
    SchoolDataset,
)


# ==================== TABLE READING ====================

def resolve_columns(schema: TableSchema, headers: Sequence[str]) -> Dict[str, str]:
    """
    Match a table's headers against the schema's alias sets.

    Returns:
        Dict mapping canonical field name -> header actually present

    Raises:
        ValueError naming the missing fields and the headers seen
    """
    present = set(headers)
    resolved = {}
    missing = []
    for field_name, aliases in schema.columns.items():
        match = next((alias for alias in aliases if alias in present), None)
        if match is None:
            missing.append(field_name)
        else:
            resolved[field_name] = match

    if missing:
        raise ValueError(
            f"Missing required columns in {schema.name}: {', '.join(missing)}. "
            f"Headers seen: {', '.join(headers) if headers else '(none)'}"
        )
    return resolved


def _table_from_frame(schema: TableSchema, df: pd.DataFrame) -> Table:
    """Validate headers once and turn a raw frame into canonical string rows."""
    df.columns = [str(col).strip() for col in df.columns]
    resolved = resolve_columns(schema, list(df.columns))

    df = df[[resolved[name] for name in schema.columns]].copy()
    df.columns = list(schema.columns)

    for column in df.columns:
        df[column] = df[column].fillna("").astype(str).str.strip()

    return Table(name=schema.name, rows=tuple(df.to_dict("records")))


def read_table(file_path: str, schema: TableSchema) -> Table:
    """
    Read one input CSV into a Table keyed by canonical field names.

    Every cell is read as a string; no NA conversion, so empty cells stay ''.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"{schema.name} file not found: {file_path}")

    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding=CSV_ENCODING)
    except pd.errors.EmptyDataError:
        raise ValueError(f"{schema.name} file has no header row: {file_path}") from None

    return _table_from_frame(schema, df)


def build_table(schema: TableSchema,
                rows: Iterable[Mapping[str, Any]],
                headers: Optional[Sequence[str]] = None) -> Table:
    """
    Build a Table from in-memory rows keyed by raw header names.

    Args:
        schema: Table schema to validate against
        rows: Row mappings using the source headers (localized or English)
        headers: Explicit header list; required when rows is empty
    """
    rows = list(rows)
    # object dtype keeps int cells as ints when a sibling cell is missing
    columns = None if headers is None else list(headers)
    df = pd.DataFrame(rows, columns=columns, dtype=object)
    return _table_from_frame(schema, df)


# ==================== REFERENCE CATALOGS ====================

def resolve_catalog(grade_table: Table, class_table: Table) -> ReferenceCatalog:
    """
    Build grade and class lookups from the two catalog tables.

    Any problem here is fatal: every score row is joined through these maps.

    Raises:
        ValueError if a catalog has no usable rows, repeats a code,
        or a class points at a grade code that does not exist
    """
    grades: Dict[str, GradeEntry] = {}
    grade_order: List[str] = []
    for row in grade_table.rows:
        name, code = row["grade_name"], row["grade_code"]
        if not (name and code):
            continue
        if code in grades:
            raise ValueError(f"Duplicate grade code in {grade_table.name}: {code}")
        grades[code] = GradeEntry(code=code, name=name)
        if name not in grade_order:
            grade_order.append(name)

    if not grades:
        raise ValueError(f"No usable rows in {grade_table.name}")

    classes: Dict[str, ClassEntry] = {}
    class_order: List[str] = []
    for row in class_table.rows:
        name, code, grade_code = row["class_name"], row["class_code"], row["grade_code"]
        if not (name and code and grade_code):
            continue
        if code in classes:
            raise ValueError(f"Duplicate class code in {class_table.name}: {code}")
        if grade_code not in grades:
            raise ValueError(
                f"Class '{name}' ({code}) refers to unknown grade code '{grade_code}'"
            )
        classes[code] = ClassEntry(code=code, name=name, grade_code=grade_code)
        if name not in class_order:
            class_order.append(name)

    if not classes:
        raise ValueError(f"No usable rows in {class_table.name}")

    return ReferenceCatalog(
        grades=grades,
        classes=classes,
        grade_order=tuple(grade_order),
        class_order=tuple(class_order),
    )


# ==================== SCORE RECORDS ====================

class _RowRejected(Exception):
    """Raised inside row parsing; always caught and turned into a Diagnostic."""

    def __init__(self, reason: str, field: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.field = field


def _parse_semester(raw: str) -> int:
    """Parse a semester, accepting integral decimals like "1.0"."""
    try:
        return int(raw)
    except ValueError:
        value = float(raw)
        if not value.is_integer():
            raise
        return int(value)


def _parse_score_row(row: Mapping[str, str], catalog: ReferenceCatalog) -> ScoreRecord:
    student_id = row["student_id"].upper()

    for field_name in SCORE_RECORD_SCHEMA.columns:
        value = student_id if field_name == "student_id" else row[field_name]
        if not value:
            raise _RowRejected("empty required field", field_name)

    try:
        semester = _parse_semester(row["semester"])
    except ValueError:
        raise _RowRejected(f"semester is not an integer: '{row['semester']}'", "semester") from None

    try:
        score = float(row["average_score"])
    except ValueError:
        raise _RowRejected(f"score is not numeric: '{row['average_score']}'", "average_score") from None
    if not np.isfinite(score):
        raise _RowRejected(f"score is not finite: '{row['average_score']}'", "average_score")

    class_name = row["class_name"]
    class_code = catalog.class_code_for(class_name)
    if class_code is None:
        raise _RowRejected(f"no class code for class name '{class_name}'", "class_name")

    grade_code = catalog.grade_code_for(class_code)
    if grade_code is None:
        raise _RowRejected(f"no grade code for class code '{class_code}'", "class_name")

    grade_name = catalog.grade_name_for(grade_code)
    if grade_name is None:
        raise _RowRejected(f"no grade name for grade code '{grade_code}'", "class_name")

    return ScoreRecord(
        student_id=student_id,
        academic_year=row["academic_year"],
        semester=semester,
        class_name=class_name,
        grade_level=grade_name,
        student_number=row["student_number"],
        subject=row["subject"],
        average_score=score,
    )


def join_score_records(score_table: Table, catalog: ReferenceCatalog) -> JoinResult:
    """
    Join raw score rows with the reference catalogs.

    This is the only stage that resolves foreign keys. A row with an empty
    field, an unparsable number or a broken class -> grade chain is skipped
    with a Diagnostic; it never aborts the batch.

    Returns:
        JoinResult with the order-preserving ScoreRecordSet and diagnostics
    """
    records = []
    diagnostics = []
    for row_number, row in enumerate(score_table.rows, start=1):
        try:
            records.append(_parse_score_row(row, catalog))
        except _RowRejected as rejected:
            diagnostics.append(Diagnostic(
                table=score_table.name,
                row_number=row_number,
                reason=rejected.reason,
                field=rejected.field,
                student_id=row["student_id"].upper() or None,
                subject=row["subject"] or None,
                academic_year=row["academic_year"] or None,
            ))

    return JoinResult(records=ScoreRecordSet(tuple(records)), diagnostics=tuple(diagnostics))


# ==================== ROSTER ====================

def normalize_gender(raw_gender: str) -> str:
    """
    Map free-text gender to Male / Female / Unknown.

    Handles variations like:
    - "男", "m", "Male" -> "Male"
    - "女", "F", "female" -> "Female"
    - anything else -> "Unknown"
    """
    gender = (raw_gender or "").strip().upper()
    if gender in MALE_ALIASES:
        return GENDER_MALE
    if gender in FEMALE_ALIASES:
        return GENDER_FEMALE
    return GENDER_UNKNOWN


def latest_classes(records: ScoreRecordSet) -> Dict[str, str]:
    """
    Find each student's class in their most recent term.

    Most recent = lexically greatest academic year, then greatest semester.
    On an exact tie the first record seen wins.
    """
    latest: Dict[str, ScoreRecord] = {}
    for record in records:
        current = latest.get(record.student_id)
        if current is None or (record.academic_year, record.semester) > \
                (current.academic_year, current.semester):
            latest[record.student_id] = record
    return {student_id: record.class_name for student_id, record in latest.items()}


def normalize_roster(student_table: Table, records: ScoreRecordSet) -> RosterResult:
    """
    Normalize roster rows into StudentProfiles.

    Requires the joined ScoreRecordSet: current class is derived from score
    history, not read from the roster, so the joiner must run first.
    """
    current_classes = latest_classes(records)

    students: Dict[str, StudentProfile] = {}
    diagnostics = []
    for row_number, row in enumerate(student_table.rows, start=1):
        student_id = row["student_id"].upper()
        name = row["name"]

        if not student_id or not name:
            diagnostics.append(Diagnostic(
                table=student_table.name,
                row_number=row_number,
                reason="missing student id or name",
                field="student_id" if not student_id else "name",
                student_id=student_id or None,
            ))
            continue

        if student_id in students:
            diagnostics.append(Diagnostic(
                table=student_table.name,
                row_number=row_number,
                reason="duplicate student id; keeping the first row",
                field="student_id",
                student_id=student_id,
            ))
            continue

        students[student_id] = StudentProfile(
            student_id=student_id,
            name=name,
            gender=normalize_gender(row["gender"]),
            current_class=current_classes.get(student_id, UNASSIGNED_CLASS),
        )

    return RosterResult(students=students, diagnostics=tuple(diagnostics))


# ==================== SUBJECTS ====================

def build_subject_catalog(subject_table: Table) -> SubjectCatalog:
    """Collect per-grade subjects and the global first-seen subject order."""
    by_grade: Dict[str, List[str]] = {}
    subject_order: List[str] = []
    diagnostics = []

    for row_number, row in enumerate(subject_table.rows, start=1):
        grade, subject = row["grade_name"], row["subject"]
        if not grade or not subject:
            diagnostics.append(Diagnostic(
                table=subject_table.name,
                row_number=row_number,
                reason="missing grade or subject",
                field="grade_name" if not grade else "subject",
                subject=subject or None,
            ))
            continue

        grade_subjects = by_grade.setdefault(grade, [])
        if subject not in grade_subjects:
            grade_subjects.append(subject)
        if subject not in subject_order:
            subject_order.append(subject)

    return SubjectCatalog(
        by_grade={grade: tuple(names) for grade, names in by_grade.items()},
        subject_order=tuple(subject_order),
        diagnostics=tuple(diagnostics),
    )


# ==================== PIPELINE ====================

def build_school_data(data_dir: str = DATA_DIR,
                      file_names: Optional[Dict[str, str]] = None) -> SchoolDataset:
    """
    Build the complete normalized school dataset.

    This is the main entry point for data loading.

    Args:
        data_dir: Directory holding the five input CSVs
        file_names: Optional overrides for config.DATA_FILES

    Returns:
        SchoolDataset ready for the aggregators in aggregations.py
    """
    files = dict(DATA_FILES)
    files.update(file_names or {})
    base = Path(data_dir)

    print("Loading reference catalogs...")
    grade_table = read_table(str(base / files["grades"]), GRADE_CATALOG_SCHEMA)
    class_table = read_table(str(base / files["classes"]), CLASS_CATALOG_SCHEMA)
    catalog = resolve_catalog(grade_table, class_table)
    print(f"  Loaded: {len(catalog.grades)} grades, {len(catalog.classes)} classes")

    print("\nLoading score records...")
    score_table = read_table(str(base / files["scores"]), SCORE_RECORD_SCHEMA)
    joined = join_score_records(score_table, catalog)
    print(f"  Loaded: {len(joined.records)} of {len(score_table)} score rows")

    print("\nLoading student roster...")
    student_table = read_table(str(base / files["students"]), STUDENT_ROSTER_SCHEMA)
    roster = normalize_roster(student_table, joined.records)
    print(f"  Loaded: {len(roster.students)} students")

    print("\nLoading subject list...")
    subject_table = read_table(str(base / files["subjects"]), SUBJECT_LIST_SCHEMA)
    subjects = build_subject_catalog(subject_table)
    print(f"  Loaded: {len(subjects.subject_order)} subjects")

    diagnostics = joined.diagnostics + roster.diagnostics + subjects.diagnostics
    if diagnostics:
        print(f"\n  Skipped {len(diagnostics)} rows:")
        for diagnostic in diagnostics:
            print(f"  Warning: {diagnostic}")

    return SchoolDataset(
        records=joined.records,
        roster=roster.students,
        catalog=catalog,
        subjects=subjects,
        years=tuple(joined.records.years()),
        diagnostics=diagnostics,
    )


def save_school_data(data: SchoolDataset, output_path: str = OUTPUT_PATH) -> None:
    """Save the normalized dataset to JSON for report consumption."""
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(data.to_dict(), f, indent=2, ensure_ascii=False)
    print(f"\nSchool data saved to {output_path}")


def load_school_data(json_path: str = OUTPUT_PATH) -> SchoolDataset:
    """Load a dataset previously written by save_school_data."""
    with open(json_path, 'r', encoding='utf-8') as f:
        return SchoolDataset.from_dict(json.load(f))


# CLI entry point
if __name__ == "__main__":
    print("=" * 60)
    print("School Score Report Data Loader")
    print("=" * 60)

    data = build_school_data()
    save_school_data(data)

    print("\n" + "=" * 60)
    print("Data Summary")
    print("=" * 60)
    print(f"  Grades: {list(data.grade_order)}")
    print(f"  Classes: {len(data.class_order)}")
    print(f"  Subjects: {list(data.subject_order)}")
    print(f"  Years: {list(data.years)}")
    print(f"  Students: {len(data.roster)}")
    print(f"  Score Records: {len(data.records)}")
    print(f"  Skipped Rows: {len(data.diagnostics)}")
