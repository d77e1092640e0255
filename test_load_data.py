"""
Test suite for the School Score Report data loader

Validates that:
1. Header aliases resolve (localized and English) and missing headers are fatal
2. Broken reference catalogs abort the run
3. Bad score / roster rows are skipped with a diagnostic, never fatal
4. Each student's current class comes from their latest score record

Run with: python3 -m pytest test_load_data.py  (or python3 test_load_data.py)
"""

import sys
import tempfile
from pathlib import Path

import pytest

from config import (
    GRADE_CATALOG_SCHEMA,
    CLASS_CATALOG_SCHEMA,
    STUDENT_ROSTER_SCHEMA,
    SCORE_RECORD_SCHEMA,
    SUBJECT_LIST_SCHEMA,
    UNASSIGNED_CLASS,
)
from models import ScoreRecord, ScoreRecordSet
from load_data import (
    resolve_columns,
    read_table,
    build_table,
    resolve_catalog,
    join_score_records,
    normalize_gender,
    normalize_roster,
    build_subject_catalog,
)


GRADE_ROWS = [
    {"年級": "一年級", "年級代號": "G1"},
    {"年級": "二年級", "年級代號": "G2"},
]

CLASS_ROWS = [
    {"班級": "一年一班", "班級代號": "C101", "年級代號": "G1"},
    {"班級": "一年二班", "班級代號": "C102", "年級代號": "G1"},
    {"班級": "二年一班", "班級代號": "C201", "年級代號": "G2"},
]

SCORE_HEADERS = ["id", "學年", "學期", "班級", "學號", "科目", "平均分"]


def score_row(student_id, year, semester, class_name, number, subject, score):
    return dict(zip(SCORE_HEADERS, [student_id, year, semester, class_name, number, subject, score]))


def make_catalog():
    return resolve_catalog(
        build_table(GRADE_CATALOG_SCHEMA, GRADE_ROWS),
        build_table(CLASS_CATALOG_SCHEMA, CLASS_ROWS),
    )


def make_record(student_id, year, semester, class_name, score=80.0, subject="國語"):
    return ScoreRecord(
        student_id=student_id,
        academic_year=year,
        semester=semester,
        class_name=class_name,
        grade_level="一年級",
        student_number="1",
        subject=subject,
        average_score=score,
    )


# ==================== HEADERS ====================

def test_resolve_columns_accepts_english_headers():
    resolved = resolve_columns(GRADE_CATALOG_SCHEMA, ["gradeName", "gradeCode"])
    assert resolved == {"grade_name": "gradeName", "grade_code": "gradeCode"}


def test_resolve_columns_prefers_first_alias():
    resolved = resolve_columns(STUDENT_ROSTER_SCHEMA, ["學號", "id", "姓名", "性別"])
    assert resolved["student_id"] == "id"


def test_missing_header_names_headers_seen():
    with pytest.raises(ValueError) as excinfo:
        build_table(CLASS_CATALOG_SCHEMA, [{"班級": "一年一班", "foo": "x", "年級代號": "G1"}])
    message = str(excinfo.value)
    assert "class_code" in message
    assert "foo" in message
    assert "班級" in message


def test_build_table_strips_headers_and_values():
    table = build_table(GRADE_CATALOG_SCHEMA, [{" grade ": " 一年級 ", "code": " G1"}])
    assert table.rows == ({"grade_name": "一年級", "grade_code": "G1"},)


def test_read_table_handles_bom_and_keeps_strings():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "scores.csv"
        path.write_text(
            "id,academicYear,semester,class,studentNumber,subject,averageScore\n"
            "s001,2023,1,一年一班,007,Math,85.5\n",
            encoding="utf-8-sig",
        )
        table = read_table(str(path), SCORE_RECORD_SCHEMA)

    assert len(table) == 1
    assert table.rows[0]["student_id"] == "s001"
    assert table.rows[0]["student_number"] == "007"
    assert table.rows[0]["average_score"] == "85.5"


def test_read_table_missing_file_is_fatal():
    with pytest.raises(FileNotFoundError):
        read_table("/nonexistent/gradeCode.csv", GRADE_CATALOG_SCHEMA)


def test_read_table_empty_file_is_fatal():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "gradeCode.csv"
        path.write_text("", encoding="utf-8")
        with pytest.raises(ValueError):
            read_table(str(path), GRADE_CATALOG_SCHEMA)


# ==================== CATALOGS ====================

def test_resolve_catalog_builds_lookups_and_order():
    catalog = make_catalog()

    assert catalog.grade_order == ("一年級", "二年級")
    assert catalog.class_order == ("一年一班", "一年二班", "二年一班")
    assert catalog.class_code_for("二年一班") == "C201"
    assert catalog.grade_code_for("C201") == "G2"
    assert catalog.grade_name_for("G2") == "二年級"
    assert catalog.class_code_for("三年一班") is None


def test_dangling_grade_code_is_fatal():
    classes = CLASS_ROWS + [{"班級": "三年一班", "班級代號": "C301", "年級代號": "G3"}]
    with pytest.raises(ValueError, match="G3"):
        resolve_catalog(
            build_table(GRADE_CATALOG_SCHEMA, GRADE_ROWS),
            build_table(CLASS_CATALOG_SCHEMA, classes),
        )


def test_catalog_without_usable_rows_is_fatal():
    grades = build_table(GRADE_CATALOG_SCHEMA, [], headers=["年級", "年級代號"])
    with pytest.raises(ValueError, match="No usable rows"):
        resolve_catalog(grades, build_table(CLASS_CATALOG_SCHEMA, CLASS_ROWS))

    blank_classes = build_table(CLASS_CATALOG_SCHEMA, [{"班級": "", "班級代號": "C1", "年級代號": "G1"}])
    with pytest.raises(ValueError, match="No usable rows"):
        resolve_catalog(build_table(GRADE_CATALOG_SCHEMA, GRADE_ROWS), blank_classes)


def test_duplicate_grade_code_is_fatal():
    grades = GRADE_ROWS + [{"年級": "三年級", "年級代號": "G1"}]
    with pytest.raises(ValueError, match="Duplicate grade code"):
        resolve_catalog(
            build_table(GRADE_CATALOG_SCHEMA, grades),
            build_table(CLASS_CATALOG_SCHEMA, CLASS_ROWS),
        )


def test_duplicate_class_code_is_fatal():
    classes = CLASS_ROWS + [{"班級": "三年一班", "班級代號": "C101", "年級代號": "G2"}]
    with pytest.raises(ValueError, match="Duplicate class code.*C101"):
        resolve_catalog(
            build_table(GRADE_CATALOG_SCHEMA, GRADE_ROWS),
            build_table(CLASS_CATALOG_SCHEMA, classes),
        )


# ==================== SCORE RECORDS ====================

def test_join_resolves_grade_and_normalizes_id():
    table = build_table(SCORE_RECORD_SCHEMA, [
        score_row(" s001 ", "2023", "1", "一年一班", "5", "國語", "85.5"),
        score_row("s002", "2023", "2", "二年一班", "3", "數學", "70"),
    ])
    result = join_score_records(table, make_catalog())

    assert result.diagnostics == ()
    first, second = result.records.records
    assert first.student_id == "S001"
    assert first.semester == 1
    assert first.average_score == 85.5
    assert first.grade_level == "一年級"
    assert second.grade_level == "二年級"


def test_join_skips_bad_rows_and_keeps_going():
    table = build_table(SCORE_RECORD_SCHEMA, [
        score_row("s001", "2023", "1", "一年一班", "5", "國語", "85"),
        score_row("s002", "2023", "1", "九年一班", "6", "國語", "80"),   # unknown class
        score_row("s003", "2023", "1", "一年一班", "7", "數學", "abc"),  # bad score
        score_row("s004", "2023", "1", "一年一班", "8", "", "90"),       # empty subject
        score_row("s005", "2023", "上", "一年一班", "9", "國語", "90"),  # bad semester
        score_row("s006", "2024", "2", "一年二班", "1", "英語", "60"),
    ])
    result = join_score_records(table, make_catalog())

    assert [r.student_id for r in result.records] == ["S001", "S006"]
    assert [d.row_number for d in result.diagnostics] == [2, 3, 4, 5]

    unknown_class, bad_score, empty_subject, bad_semester = result.diagnostics
    assert unknown_class.student_id == "S002"
    assert unknown_class.subject == "國語"
    assert unknown_class.academic_year == "2023"
    assert "九年一班" in unknown_class.reason
    assert bad_score.field == "average_score"
    assert empty_subject.field == "subject"
    assert bad_semester.field == "semester"
    assert "S002" in str(unknown_class)


def test_missing_cell_does_not_corrupt_other_rows():
    table = build_table(SCORE_RECORD_SCHEMA, [
        score_row("s001", 2023, 1, "一年一班", 5, "國語", 85),
        score_row("s002", 2023, None, "一年一班", 6, "國語", 70),
    ])
    assert table.rows[0]["semester"] == "1"
    assert table.rows[0]["average_score"] == "85"

    result = join_score_records(table, make_catalog())

    assert [r.student_id for r in result.records] == ["S001"]
    assert result.records.records[0].semester == 1
    assert [(d.row_number, d.field) for d in result.diagnostics] == [(2, "semester")]


def test_semester_accepts_integral_decimal():
    table = build_table(SCORE_RECORD_SCHEMA, [
        score_row("s001", "2023", "2.0", "一年一班", "5", "國語", "85"),
        score_row("s002", "2023", "1.5", "一年一班", "6", "國語", "70"),
    ])
    result = join_score_records(table, make_catalog())

    assert [r.semester for r in result.records] == [2]
    assert [(d.row_number, d.field) for d in result.diagnostics] == [(2, "semester")]


def test_join_empty_score_table():
    table = build_table(SCORE_RECORD_SCHEMA, [], headers=SCORE_HEADERS)
    result = join_score_records(table, make_catalog())

    assert len(result.records) == 0
    assert result.diagnostics == ()
    assert result.records.years() == []


# ==================== ROSTER ====================

@pytest.mark.parametrize("raw, expected", [
    ("男", "Male"), ("m", "Male"), (" Male ", "Male"),
    ("女", "Female"), ("F", "Female"), ("female", "Female"),
    ("", "Unknown"), ("x", "Unknown"), (None, "Unknown"),
])
def test_normalize_gender(raw, expected):
    assert normalize_gender(raw) == expected


def test_current_class_prefers_latest_year_regardless_of_order():
    records = ScoreRecordSet((
        make_record("S001", "2024", 1, "二年一班"),
        make_record("S001", "2023", 2, "一年一班"),
    ))
    table = build_table(STUDENT_ROSTER_SCHEMA, [{"id": "s001", "姓名": "王小明", "性別": "男"}])
    roster = normalize_roster(table, records)

    assert roster.students["S001"].current_class == "二年一班"

    reversed_records = ScoreRecordSet(tuple(reversed(records.records)))
    roster = normalize_roster(table, reversed_records)
    assert roster.students["S001"].current_class == "二年一班"


def test_current_class_breaks_year_tie_by_semester():
    records = ScoreRecordSet((
        make_record("S001", "2023", 2, "一年二班"),
        make_record("S001", "2023", 1, "一年一班"),
    ))
    table = build_table(STUDENT_ROSTER_SCHEMA, [{"id": "S001", "姓名": "王小明", "性別": "M"}])

    assert normalize_roster(table, records).students["S001"].current_class == "一年二班"


def test_roster_defaults_and_skips():
    table = build_table(STUDENT_ROSTER_SCHEMA, [
        {"id": "s009", "姓名": "林小華", "性別": "女"},
        {"id": "", "姓名": "無名", "性別": "男"},
        {"id": "s010", "姓名": "", "性別": "男"},
        {"id": "S009", "姓名": "重複", "性別": "男"},
    ])
    roster = normalize_roster(table, ScoreRecordSet())

    assert list(roster.students) == ["S009"]
    student = roster.students["S009"]
    assert student.name == "林小華"
    assert student.gender == "Female"
    assert student.current_class == UNASSIGNED_CLASS
    assert [d.row_number for d in roster.diagnostics] == [2, 3, 4]
    assert roster.diagnostics[1].field == "name"


# ==================== SUBJECTS ====================

def test_subject_catalog_keeps_first_seen_order():
    table = build_table(SUBJECT_LIST_SCHEMA, [
        {"年級": "一年級", "科目": "國語"},
        {"年級": "一年級", "科目": "數學"},
        {"年級": "二年級", "科目": "英語"},
        {"年級": "二年級", "科目": "國語"},
        {"年級": "一年級", "科目": "國語"},
        {"年級": "", "科目": "體育"},
    ])
    catalog = build_subject_catalog(table)

    assert catalog.subject_order == ("國語", "數學", "英語")
    assert catalog.by_grade == {"一年級": ("國語", "數學"), "二年級": ("英語", "國語")}
    assert len(catalog.diagnostics) == 1


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
