"""
Score aggregations for the School Score Report

Pure functions over a (filtered) ScoreRecordSet. Nothing here caches or
mutates shared state, so every function can be re-run per filter change.
Empty or filtered-to-empty inputs give empty / None results, never errors.

Two averaging policies live side by side on purpose:
- Student-centric (histogram, box stats, categories, subject comparison):
  one mean per student first, so students with more rows are not over-weighted.
  Across years this is the mean of per-year means.
- Cohort-centric (trend series): flat mean over all matching rows.
"""

import re
from decimal import Decimal, ROUND_HALF_UP
from operator import attrgetter
from pathlib import Path
from typing import Dict, List, Callable, Iterable, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from config import (
    SCORE_BINS,
    PASSING_SCORE,
    GENDER_MALE,
    GENDER_FEMALE,
    GENDER_UNKNOWN,
    UNKNOWN_STUDENT_NAME,
    STUDENT_LIST_HEADERS,
    CSV_ENCODING,
)
from models import (
    ScoreRecord,
    ScoreRecordSet,
    ScoreFilter,
    StudentProfile,
    SchoolDataset,
    BinStudent,
    HistogramBin,
    BoxStat,
    CategoryStat,
    TrendPoint,
    TrendSeries,
    SubjectStat,
)


def _records_frame(records: Iterable[ScoreRecord]) -> pd.DataFrame:
    return ScoreRecordSet(tuple(records)).to_frame()


def _filtered(records: Iterable[ScoreRecord], score_filter: Optional[ScoreFilter]) -> List[ScoreRecord]:
    return (score_filter or ScoreFilter()).apply(records)


# ==================== FINAL AVERAGES ====================

def student_final_averages(records: Iterable[ScoreRecord],
                           academic_year: Optional[str] = None) -> pd.DataFrame:
    """
    Compute each student's final average with the two-stage policy.

    1. Mean per (student, academic year) -> yearly mean
    2. Year selected: that year's mean. Otherwise: mean of the yearly means,
       so every year weighs the same regardless of its row count.

    Class and student number come from the first record of the selected year
    (the latest year when all years are selected).

    Returns:
        DataFrame indexed by student_id with columns
        average, academic_year, class_name, student_number
    """
    frame = _records_frame(records)
    columns = ["average", "academic_year", "class_name", "student_number"]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    yearly = frame.groupby(["student_id", "academic_year"], sort=False).agg(
        yearly_mean=("average_score", "mean"),
        class_name=("class_name", "first"),
        student_number=("student_number", "first"),
    ).reset_index()

    if academic_year is not None:
        selected = yearly[yearly["academic_year"] == academic_year]
        result = selected.rename(columns={"yearly_mean": "average"}).set_index("student_id")
        return result[columns]

    means = yearly.groupby("student_id", sort=False)["yearly_mean"].mean()
    latest = (yearly.sort_values("academic_year", kind="stable")
                    .drop_duplicates("student_id", keep="last")
                    .set_index("student_id"))
    latest["average"] = means
    return latest.loc[means.index, columns]


# ==================== HISTOGRAM ====================

def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 always up (90.5 -> 91, 90.49 -> 90)."""
    return int(Decimal(str(float(value))).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def score_bin(value: float) -> Optional[Tuple[str, int, int]]:
    """Find the bin for a final average; None outside [0, 100]."""
    rounded = round_half_up(value)
    for label, lower, upper in SCORE_BINS:
        if lower <= rounded <= upper:
            return label, lower, upper
    return None


def _student_number_key(student_number: str) -> int:
    match = re.match(r'^\s*(\d+)', student_number or "")
    return int(match.group(1)) if match else 0


def _bin_student_sort_key(student: BinStudent):
    return (student.academic_year, student.class_name, _student_number_key(student.student_number))


def histogram_bins(records: Iterable[ScoreRecord],
                   roster: Optional[Mapping[str, StudentProfile]] = None,
                   score_filter: Optional[ScoreFilter] = None) -> List[HistogramBin]:
    """
    Distribute students into the fixed ten-point score bins.

    Rounding is only used to pick the bin; each student keeps their exact
    final average. Bins without students are dropped.

    Args:
        records: Joined score records
        roster: Student profiles by id, used for display names
        score_filter: Subject / year / grade selection
    """
    roster = roster or {}
    score_filter = score_filter or ScoreFilter()
    finals = student_final_averages(_filtered(records, score_filter), score_filter.academic_year)

    members: Dict[str, List[BinStudent]] = {label: [] for label, _, _ in SCORE_BINS}
    for student_id, row in finals.iterrows():
        average = float(row["average"])
        found = score_bin(average)
        if found is None:
            continue
        profile = roster.get(student_id)
        members[found[0]].append(BinStudent(
            student_id=student_id,
            name=profile.name if profile else UNKNOWN_STUDENT_NAME,
            class_name=row["class_name"],
            student_number=row["student_number"],
            academic_year=row["academic_year"],
            average=average,
        ))

    return [
        HistogramBin(
            label=label,
            lower=lower,
            upper=upper,
            count=len(members[label]),
            students=tuple(sorted(members[label], key=_bin_student_sort_key)),
        )
        for label, lower, upper in SCORE_BINS
        if members[label]
    ]


def interval_students(bins: Sequence[HistogramBin], label: str) -> Tuple[BinStudent, ...]:
    """Students of one bin, or an empty tuple when the bin has none."""
    for histogram_bin in bins:
        if histogram_bin.label == label:
            return histogram_bin.students
    return ()


def export_student_list(students: Sequence[BinStudent], output_path: str) -> None:
    """Write an interval's student list to CSV (with BOM so Excel reads it)."""
    rows = [
        [s.academic_year, s.class_name, s.student_number, s.name, f"{s.average:.1f}"]
        for s in students
    ]
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=STUDENT_LIST_HEADERS).to_csv(
        output_path, index=False, encoding=CSV_ENCODING
    )
    print(f"Student list saved to {output_path}")


# ==================== BOX STATISTICS ====================

def summarize_scores(values: Iterable[float], grade: Optional[str] = None) -> BoxStat:
    """
    Min, quartiles, max, mean and count of a set of scores.

    Quartiles use linear interpolation between order statistics:
    position (n - 1) * q, which is pandas' default quantile method.
    """
    series = pd.Series(list(values), dtype=float).sort_values(ignore_index=True)
    if series.empty:
        return BoxStat(min=None, q1=None, median=None, q3=None, max=None,
                       mean=None, count=0, grade=grade)

    return BoxStat(
        min=float(series.iloc[0]),
        q1=float(series.quantile(0.25)),
        median=float(series.quantile(0.5)),
        q3=float(series.quantile(0.75)),
        max=float(series.iloc[-1]),
        mean=float(series.mean()),
        count=int(len(series)),
        grade=grade,
    )


def grade_box_stats(records: Iterable[ScoreRecord],
                    grade: str,
                    score_filter: Optional[ScoreFilter] = None) -> BoxStat:
    """Box statistics of the final averages of every student in one grade."""
    score_filter = score_filter or ScoreFilter()
    grade_filter = ScoreFilter(
        subject=score_filter.subject,
        academic_year=score_filter.academic_year,
        grade=grade,
    )
    finals = student_final_averages(grade_filter.apply(records), score_filter.academic_year)
    return summarize_scores(finals["average"].tolist(), grade=grade)


def box_stats_by_grade(dataset: SchoolDataset,
                       score_filter: Optional[ScoreFilter] = None) -> List[BoxStat]:
    """Box statistics per grade in display order; grades without data are left out."""
    stats = [grade_box_stats(dataset.records, grade, score_filter) for grade in dataset.grade_order]
    return [stat for stat in stats if stat.count > 0]


# ==================== CATEGORIES ====================

CategoryKey = Union[str, Callable[[ScoreRecord], Optional[str]]]


def _per_student_means(records: Iterable[ScoreRecord], key: CategoryKey) -> pd.Series:
    """Mean score per (category, student); categories kept in first-seen order."""
    key_func = key if callable(key) else attrgetter(key)
    rows = [(key_func(r), r.student_id, r.average_score) for r in records]
    rows = [row for row in rows if row[0]]
    if not rows:
        return pd.Series(dtype=float)

    frame = pd.DataFrame(rows, columns=["category", "student_id", "score"])
    return frame.groupby(["category", "student_id"], sort=False)["score"].mean()


def category_stats(records: Iterable[ScoreRecord], key: CategoryKey) -> Dict[str, CategoryStat]:
    """
    Average, student count, min and max per category.

    Each student contributes exactly one value per category (their own mean),
    however many subject rows they have.

    Args:
        records: Score records, already filtered
        key: ScoreRecord field name (e.g. "grade_level") or a callable
    """
    per_student = _per_student_means(records, key)
    if per_student.empty:
        return {}

    summary = per_student.groupby(level="category", sort=False).agg(["mean", "count", "min", "max"])
    return {
        category: CategoryStat(
            category=category,
            average=float(row["mean"]),
            count=int(row["count"]),
            min=float(row["min"]),
            max=float(row["max"]),
        )
        for category, row in summary.iterrows()
    }


def gender_stats(dataset: SchoolDataset,
                 score_filter: Optional[ScoreFilter] = None) -> Dict[str, CategoryStat]:
    """Male / Female comparison; students without a known gender are excluded."""
    def gender_of(record: ScoreRecord) -> str:
        profile = dataset.roster.get(record.student_id)
        return profile.gender if profile else GENDER_UNKNOWN

    stats = category_stats(_filtered(dataset.records, score_filter), gender_of)
    return {gender: stats[gender] for gender in (GENDER_MALE, GENDER_FEMALE) if gender in stats}


def grade_stats(dataset: SchoolDataset,
                score_filter: Optional[ScoreFilter] = None) -> Dict[str, CategoryStat]:
    """Per-grade comparison in grade display order."""
    stats = category_stats(_filtered(dataset.records, score_filter), "grade_level")
    return {grade: stats[grade] for grade in dataset.grade_order if grade in stats}


# ==================== TRENDS ====================

def _trend_series(records: List[ScoreRecord],
                  field: str,
                  labels: Sequence[str],
                  years: Sequence[str],
                  keep_empty: bool = False) -> List[TrendSeries]:
    means: Dict[Tuple[str, str], float] = {}
    if records:
        frame = _records_frame(records)
        grouped = frame.groupby([field, "academic_year"])["average_score"].mean()
        means = {key: float(value) for key, value in grouped.items()}

    series = []
    for label in labels:
        points = tuple(TrendPoint(academic_year=year, value=means.get((label, year))) for year in years)
        if keep_empty or any(point.value is not None for point in points):
            series.append(TrendSeries(label=label, points=points))
    return series


def subject_trends(dataset: SchoolDataset,
                   score_filter: Optional[ScoreFilter] = None) -> List[TrendSeries]:
    """
    Year-over-year flat mean per subject.

    The filter's subject and grade apply; its year does not, since the
    series spans every year. Years without rows are None.
    """
    score_filter = score_filter or ScoreFilter()
    records = ScoreFilter(subject=score_filter.subject, grade=score_filter.grade).apply(dataset.records)
    return _trend_series(records, "subject", dataset.subject_order, dataset.years)


def grade_trends(dataset: SchoolDataset,
                 score_filter: Optional[ScoreFilter] = None) -> List[TrendSeries]:
    """Year-over-year flat mean per grade; same filtering as subject_trends."""
    score_filter = score_filter or ScoreFilter()
    records = ScoreFilter(subject=score_filter.subject, grade=score_filter.grade).apply(dataset.records)
    return _trend_series(records, "grade_level", dataset.grade_order, dataset.years)


# ==================== SUBJECT COMPARISON ====================

def subject_comparison(dataset: SchoolDataset,
                       academic_year: Optional[str] = None,
                       grades: Optional[Sequence[str]] = None) -> List[SubjectStat]:
    """
    Per-subject average of student means and pass rate.

    Args:
        dataset: Normalized school dataset
        academic_year: Restrict to one year (None or "all" for every year)
        grades: Grades to include (None for every grade)
    """
    records = ScoreFilter(academic_year=academic_year).apply(dataset.records)
    if grades is not None:
        records = [r for r in records if r.grade_level in grades]

    per_student = _per_student_means(records, "subject")
    if per_student.empty:
        return []

    result = []
    for subject in dataset.subject_order:
        if subject not in per_student.index.get_level_values("category"):
            continue
        means = per_student.xs(subject, level="category")
        result.append(SubjectStat(
            subject=subject,
            average=float(means.mean()),
            count=int(len(means)),
            pass_rate=float((means >= PASSING_SCORE).sum() / len(means) * 100),
        ))
    return result


# ==================== STUDENT TRACKING ====================

def classes_in_year(dataset: SchoolDataset, academic_year: str) -> List[str]:
    """Classes with records in a year, in catalog class order."""
    present = {r.class_name for r in dataset.records if r.academic_year == academic_year}
    return [class_name for class_name in dataset.class_order if class_name in present]


def students_in_class(dataset: SchoolDataset,
                      academic_year: str,
                      class_name: str) -> List[StudentProfile]:
    """Roster profiles with records in one class and year, ordered by student number."""
    numbers: Dict[str, str] = {}
    for record in dataset.records:
        if record.academic_year == academic_year and record.class_name == class_name:
            numbers.setdefault(record.student_id, record.student_number)

    profiles = [p for sid, p in dataset.roster.items() if sid in numbers]
    return sorted(profiles, key=lambda p: _student_number_key(numbers[p.student_id]))


def student_subject_trend(records: Iterable[ScoreRecord],
                          student_id: str,
                          subject_order: Sequence[str]) -> List[TrendSeries]:
    """
    One series per subject for a single student across their own years.

    Every subject in subject_order gets a series, even when all its points
    are None, so the legend stays stable between students.
    """
    student_id = student_id.strip().upper()
    own = [r for r in records if r.student_id == student_id and r.subject in subject_order]
    years = sorted({r.academic_year for r in own})
    return _trend_series(own, "subject", subject_order, years, keep_empty=True)
