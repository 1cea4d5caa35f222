"""
Unit tests for the deterministic rules engine. Inventory rows are plain
namespaces; no database is needed.
"""

from datetime import datetime, timedelta, timezone
from itertools import count
from types import SimpleNamespace

import pytest

from services.rules_engine import (
    dedupe_suggestions,
    parent_dir,
    run_rules,
    strip_extension,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)
_ids = count(1)


def make_file(path, size=1024, modified=None, **kwargs):
    name = path.rsplit("/", 1)[-1]
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else None
    return SimpleNamespace(
        id=kwargs.get("id", next(_ids)),
        name=name,
        path=path,
        is_folder=False,
        size_bytes=size,
        file_extension=ext,
        modified_at_sp=modified or NOW - timedelta(days=10),
        depth=kwargs.get("depth", path.count("/") - 2),
    )


def make_folder(path, depth=None):
    name = path.rstrip("/").rsplit("/", 1)[-1]
    return SimpleNamespace(
        id=next(_ids),
        name=name,
        path=path,
        is_folder=True,
        size_bytes=0,
        file_extension=None,
        modified_at_sp=NOW - timedelta(days=10),
        depth=depth if depth is not None else path.rstrip("/").count("/") - 1,
    )


def titles_for(result, item):
    return sorted(s.title for s in result.suggestions if s.file_id == item.id)


def test_helpers():
    assert strip_extension("Budget_v2.xlsx") == "Budget_v2"
    assert strip_extension("README") == "README"
    assert parent_dir("/Docs/A/file.txt") == "/Docs/A/"
    assert parent_dir("/Docs/A/") == "/Docs/"


def test_clean_file_matches_nothing():
    item = make_file("/Docs/quarterly-report.pdf")
    result = run_rules([item], now=NOW)
    assert result.suggestions == []
    assert result.matched_ids == set()


def test_zero_byte_thumbs_db_triggers_empty_and_temporary():
    item = make_file("/Docs/THUMBS.DB", size=0)
    result = run_rules([item], now=NOW)

    assert titles_for(result, item) == ["Empty file", "Temporary file"]
    survivors = dedupe_suggestions(result.suggestions)
    assert len(survivors) == 2
    assert {s.severity for s in survivors} == {"high", "critical"}
    assert result.matched_ids == {item.id}


@pytest.mark.parametrize("name", ["~$Budget.xlsx", "scratch.TMP", ".DS_Store", "desktop.ini", "~lock.report.docx#"])
def test_temporary_files(name):
    item = make_file(f"/Docs/{name}")
    result = run_rules([item], now=NOW)
    temp = [s for s in result.suggestions if s.title == "Temporary file"]
    assert len(temp) == 1
    assert temp[0].category == "delete"
    assert temp[0].confidence == 1.0


@pytest.mark.parametrize("name", ["Copy of plan.docx", "plan (1).docx", "plan_backup.docx", "plan-old.docx", "plan_copy2.docx"])
def test_backup_copies(name):
    item = make_file(f"/Docs/{name}")
    result = run_rules([item], now=NOW)
    assert "Backup/copy file" in titles_for(result, item)


def test_version_suffix_rename():
    item = make_file("/Docs/Budget_v2_final.xlsx")
    result = run_rules([item], now=NOW)

    version = [s for s in result.suggestions if s.title == "Version suffix in filename"]
    assert len(version) == 1
    assert version[0].category == "rename"
    assert version[0].severity == "medium"
    assert version[0].suggested_value == "Budget.xlsx"
    assert version[0].current_value == "/Docs/Budget_v2_final.xlsx"


def test_all_caps_rename():
    item = make_file("/Docs/MEETING NOTES.docx")
    result = run_rules([item], now=NOW)

    caps = [s for s in result.suggestions if s.title == "ALL CAPS filename"]
    assert len(caps) == 1
    assert caps[0].severity == "low"
    assert caps[0].suggested_value == "meeting-notes.docx"


def test_short_caps_name_is_ignored():
    item = make_file("/Docs/NDA.pdf")
    assert run_rules([item], now=NOW).suggestions == []


def test_special_characters_rename():
    item = make_file("/Docs/Q1 & Q2  report#.pdf")
    result = run_rules([item], now=NOW)

    special = [s for s in result.suggestions if s.title == "Special characters in filename"]
    assert len(special) == 1
    assert special[0].suggested_value == "Q1 Q2 report.pdf"
    assert special[0].confidence == 0.85


def test_old_files_split_into_archive_and_delete():
    stale = make_file("/Docs/stale.docx", modified=NOW - timedelta(days=3 * 365))
    ancient = make_file("/Docs/ancient.docx", modified=NOW - timedelta(days=5 * 365))
    undated = make_file("/Docs/undated.docx")
    undated.modified_at_sp = None

    result = run_rules([stale, ancient, undated], now=NOW)
    by_id = {s.file_id: s for s in result.suggestions}

    assert by_id[stale.id].title == "Stale file"
    assert by_id[stale.id].category == "archive"
    assert by_id[ancient.id].title == "Very old file"
    assert by_id[ancient.id].category == "delete"
    assert undated.id not in by_id


def test_naive_timestamps_are_treated_as_utc():
    item = make_file("/Docs/legacy.docx", modified=datetime(2018, 1, 1))
    result = run_rules([item], now=NOW)
    assert titles_for(result, item) == ["Very old file"]


def test_duplicate_keeps_most_recent_copy():
    january = make_file("/Docs/A/report.docx", size=500, modified=datetime(2024, 1, 15, tzinfo=timezone.utc))
    june = make_file("/Docs/B/Report.docx", size=500, modified=datetime(2024, 6, 15, tzinfo=timezone.utc))
    other_size = make_file("/Docs/C/report.docx", size=501, modified=datetime(2024, 3, 1, tzinfo=timezone.utc))

    result = run_rules([january, june, other_size], now=NOW)
    dupes = [s for s in result.suggestions if s.title == "Duplicate file"]

    assert len(dupes) == 1
    assert dupes[0].file_id == january.id
    assert dupes[0].category == "delete"
    assert dupes[0].severity == "high"
    assert dupes[0].confidence == 0.85
    assert "/Docs/B/Report.docx" in dupes[0].description


def test_extracted_archive_needs_sibling_folder():
    archive = make_file("/Docs/data.zip")
    sibling = make_folder("/Docs/Data/")
    elsewhere_archive = make_file("/Docs/Other/photos.tar.gz")
    cousin = make_folder("/Docs/Nested/photos/")

    result = run_rules([archive, sibling, elsewhere_archive, cousin], now=NOW)
    hits = [s for s in result.suggestions if s.title == "Archive with extracted contents"]

    assert [s.file_id for s in hits] == [archive.id]
    assert hits[0].severity == "medium"


def test_deep_empty_folder_only_flags_depth():
    folder = make_folder("/Docs/a/b/c/d/e/", depth=5)
    result = run_rules([folder], now=NOW)

    assert [s.title for s in result.suggestions] == ["Deeply nested folder"]
    assert result.suggestions[0].category == "structure"
    assert result.suggestions[0].severity == "high"


def test_folder_at_depth_four_is_not_deep():
    folder = make_folder("/Docs/a/b/c/d/", depth=4)
    assert run_rules([folder], now=NOW).suggestions == []


def test_sparse_folder_counts_direct_files_only():
    shallow = make_folder("/Docs/Top/", depth=1)
    sparse = make_folder("/Docs/Top/Inner/", depth=2)
    busy = make_folder("/Docs/Top/Busy/", depth=2)
    items = [
        shallow, sparse, busy,
        make_file("/Docs/Top/only.txt"),
        make_file("/Docs/Top/Inner/one.txt"),
        make_file("/Docs/Top/Inner/two.txt"),
        make_file("/Docs/Top/Busy/1.txt"),
        make_file("/Docs/Top/Busy/2.txt"),
        make_file("/Docs/Top/Busy/3.txt"),
    ]

    result = run_rules(items, now=NOW)
    sparse_hits = [s for s in result.suggestions if s.title == "Sparse folder"]

    assert [s.file_id for s in sparse_hits] == [sparse.id]
    assert "2 files" in sparse_hits[0].description


@pytest.mark.parametrize("children, flagged", [(50, True), (49, False)])
def test_overcrowded_threshold(children, flagged):
    folder = make_folder("/Docs/Big/", depth=1)
    items = [folder] + [make_file(f"/Docs/Big/file{i}.txt") for i in range(children - 1)]
    items.append(make_folder("/Docs/Big/Sub/", depth=2))

    result = run_rules(items, now=NOW)
    crowded = [s for s in result.suggestions if s.title == "Overcrowded folder"]

    assert bool(crowded) is flagged
    if flagged:
        assert crowded[0].file_id == folder.id
        assert f"{children} direct children" in crowded[0].description


def test_rules_do_not_stop_at_first_match():
    item = make_file("/Docs/Copy of Plan_v3 #1.docx", size=0)
    result = run_rules([item], now=NOW)
    assert titles_for(result, item) == [
        "Backup/copy file",
        "Empty file",
        "Special characters in filename",
        "Version suffix in filename",
    ]


def test_dedup_is_idempotent_over_repeated_runs():
    items = [
        make_file("/Docs/THUMBS.DB", size=0),
        make_file("/Docs/Budget_v2_final.xlsx"),
        make_file("/Docs/A/report.docx", size=500, modified=datetime(2024, 1, 1, tzinfo=timezone.utc)),
        make_file("/Docs/B/report.docx", size=500, modified=datetime(2024, 6, 1, tzinfo=timezone.utc)),
        make_folder("/Docs/a/b/c/d/e/", depth=5),
    ]
    once = dedupe_suggestions(run_rules(items, now=NOW).suggestions)
    twice = dedupe_suggestions(run_rules(items, now=NOW).suggestions + run_rules(items, now=NOW).suggestions)

    assert [s.dedup_key() for s in twice] == [s.dedup_key() for s in once]


def test_dedup_first_occurrence_wins():
    first = run_rules([make_file("/Docs/empty.txt", size=0, id=999)], now=NOW).suggestions[0]
    later = run_rules([make_file("/Docs/empty.txt", size=0, id=999)], now=NOW).suggestions[0]
    later.source = "ai"

    survivors = dedupe_suggestions([first, later])
    assert survivors == [first]
    assert survivors[0].source == "rules"
