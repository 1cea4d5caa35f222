"""
Deterministic rules engine.

Every rule is a full pass over one scan's inventory and may match an item
that another rule already matched; ``dedupe_suggestions`` resolves overlaps
later. Items matched by any rule are collected into the claimed set so the
AI pass only sees what the rules could not explain.
"""

import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

TWO_YEARS = timedelta(days=2 * 365.25)
FOUR_YEARS = timedelta(days=4 * 365.25)

DEEP_FOLDER_DEPTH = 4
OVERCROWDED_CHILDREN = 50

TEMP_PATTERNS = [
    re.compile(r"^~\$"),
    re.compile(r"\.tmp$", re.IGNORECASE),
    re.compile(r"^Thumbs\.db$", re.IGNORECASE),
    re.compile(r"^\.DS_Store$", re.IGNORECASE),
    re.compile(r"^desktop\.ini$", re.IGNORECASE),
    re.compile(r"^\.gitkeep$", re.IGNORECASE),
    re.compile(r"^~lock\."),
]

BACKUP_PATTERNS = [
    re.compile(r"[_\s-]backup$", re.IGNORECASE),
    re.compile(r"[_\s-]bak$", re.IGNORECASE),
    re.compile(r"[_\s-]old$", re.IGNORECASE),
    re.compile(r"^Copy of ", re.IGNORECASE),
    re.compile(r"\(\d+\)(?:\.\w+)?$"),            # "file (1).docx"
    re.compile(r"[_\s-]copy(?:\s?\d+)?$", re.IGNORECASE),  # "file_copy", "file_copy2"
]

# Applied in order, each stripping its first match
VERSION_SUFFIX_PATTERNS = [
    re.compile(r"[_\s-]v\d+", re.IGNORECASE),
    re.compile(r"[_\s-]ver\d+", re.IGNORECASE),
    re.compile(r"[_\s-]final", re.IGNORECASE),
    re.compile(r"[_\s-]final[_\s-]?v?\d*", re.IGNORECASE),
    re.compile(r"[_\s-]draft", re.IGNORECASE),
    re.compile(r"[_\s-]rev\d*", re.IGNORECASE),
    re.compile(r"[_\s-]edited", re.IGNORECASE),
    re.compile(r"[_\s-]updated", re.IGNORECASE),
    re.compile(r"[_\s-]new$", re.IGNORECASE),
    re.compile(r"[_\s-]latest$", re.IGNORECASE),
]

SPECIAL_CHARS = re.compile(r"""[#%&{}\\<>*?/$!'":@+`|=]""")
ALL_CAPS_PATTERN = re.compile(r"^[A-Z0-9_\s-]{8,}\.\w+$")
ARCHIVE_PATTERN = re.compile(r"\.(zip|rar|7z|tar\.gz|tgz)$", re.IGNORECASE)

_EXTENSION = re.compile(r"\.\w+$")
_TRAILING_SEPARATORS = re.compile(r"[_\s-]+$")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class SuggestionDraft:
    category: str
    severity: str
    title: str
    description: str
    current_value: Optional[str]
    confidence: float
    file_id: Optional[int] = None
    suggested_value: Optional[str] = None
    source: str = "rules"

    def dedup_key(self):
        return (self.file_id or self.current_value, self.category, self.title)


@dataclass
class RulesResult:
    suggestions: List[SuggestionDraft] = field(default_factory=list)
    matched_ids: Set[int] = field(default_factory=set)


# --- Helpers ---

def strip_extension(name: str) -> str:
    return _EXTENSION.sub("", name, count=1)


def parent_dir(path: str) -> str:
    """Directory holding an item, with trailing ``/``. Works for folder paths too."""
    trimmed = path[:-1] if path.endswith("/") else path
    return trimmed[: trimmed.rfind("/") + 1]


def _ext_suffix(item) -> str:
    return f".{item.file_extension}" if item.file_extension else ""


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _files(items):
    return (item for item in items if not item.is_folder)


def _folders(items):
    return (item for item in items if item.is_folder)


def _draft(item, category, severity, title, description, confidence, suggested_value=None) -> SuggestionDraft:
    return SuggestionDraft(
        file_id=item.id,
        category=category,
        severity=severity,
        title=title,
        description=description,
        current_value=item.path,
        suggested_value=suggested_value,
        confidence=confidence,
    )


# --- Rules ---

def empty_files(items, now) -> Iterable[SuggestionDraft]:
    for item in _files(items):
        if (item.size_bytes or 0) == 0:
            yield _draft(
                item, "delete", "high", "Empty file",
                "This file is 0 bytes. It is probably a failed upload or a placeholder nobody filled in.",
                0.95,
            )


def temporary_files(items, now) -> Iterable[SuggestionDraft]:
    for item in _files(items):
        if any(p.search(item.name) for p in TEMP_PATTERNS):
            yield _draft(
                item, "delete", "critical", "Temporary file",
                "Lock, temp or OS metadata file that does not belong in a document library.",
                1.0,
            )


def backup_copies(items, now) -> Iterable[SuggestionDraft]:
    for item in _files(items):
        bare = strip_extension(item.name)
        if any(p.search(bare) or p.search(item.name) for p in BACKUP_PATTERNS):
            yield _draft(
                item, "delete", "high", "Backup/copy file",
                f'"{item.name}" looks like a backup or copy. If the original is still here, this one can go.',
                0.8,
            )


def version_suffixes(items, now) -> Iterable[SuggestionDraft]:
    for item in _files(items):
        bare = strip_extension(item.name)
        if not any(p.search(bare) for p in VERSION_SUFFIX_PATTERNS):
            continue
        clean = bare
        for pattern in VERSION_SUFFIX_PATTERNS:
            clean = pattern.sub("", clean, count=1)
        clean = _TRAILING_SEPARATORS.sub("", clean)
        yield _draft(
            item, "rename", "medium", "Version suffix in filename",
            f'"{item.name}" carries version markers in its name. SharePoint keeps version history already.',
            0.75,
            suggested_value=f"{clean}{_ext_suffix(item)}",
        )


def all_caps_names(items, now) -> Iterable[SuggestionDraft]:
    for item in _files(items):
        if ALL_CAPS_PATTERN.search(item.name):
            suggested = re.sub(r"\s+", "-", strip_extension(item.name).lower()) + _ext_suffix(item)
            yield _draft(
                item, "rename", "low", "ALL CAPS filename",
                f'"{item.name}" is written in capitals. Standard casing keeps the library consistent.',
                0.7,
                suggested_value=suggested,
            )


def special_characters(items, now) -> Iterable[SuggestionDraft]:
    for item in _files(items):
        if SPECIAL_CHARS.search(item.name):
            clean = re.sub(r"\s{2,}", " ", SPECIAL_CHARS.sub("", item.name)).strip()
            yield _draft(
                item, "rename", "medium", "Special characters in filename",
                f'"{item.name}" contains characters that break sync clients, URLs or other platforms.',
                0.85,
                suggested_value=clean,
            )


def old_files(items, now) -> Iterable[SuggestionDraft]:
    for item in _files(items):
        modified = _as_utc(item.modified_at_sp)
        if modified is None:
            continue
        age = now - modified
        if age > FOUR_YEARS:
            yield _draft(
                item, "delete", "medium", "Very old file",
                f"Untouched since {modified:%Y-%m-%d}. Check whether anyone still needs it.",
                0.6,
            )
        elif age > TWO_YEARS:
            yield _draft(
                item, "archive", "medium", "Stale file",
                f"Untouched since {modified:%Y-%m-%d}. A candidate for archive storage.",
                0.65,
            )


def duplicate_files(items, now) -> Iterable[SuggestionDraft]:
    groups: Dict[tuple, list] = defaultdict(list)
    for item in _files(items):
        groups[(item.name.lower(), item.size_bytes or 0)].append(item)

    for dupes in groups.values():
        if len(dupes) < 2:
            continue
        # Stable: copies with equal stamps keep inventory order
        dupes = sorted(dupes, key=lambda f: _as_utc(f.modified_at_sp) or _EPOCH, reverse=True)
        original = dupes[0]
        for copy in dupes[1:]:
            yield _draft(
                copy, "delete", "high", "Duplicate file",
                f'Same name and size as "{original.path}", which was modified more recently.',
                0.85,
            )


def extracted_archives(items, now) -> Iterable[SuggestionDraft]:
    folders_by_dir: Dict[str, Dict[str, object]] = defaultdict(dict)
    for folder in _folders(items):
        folders_by_dir[parent_dir(folder.path)].setdefault(folder.name.lower(), folder)

    for item in _files(items):
        if not ARCHIVE_PATTERN.search(item.name):
            continue
        base = ARCHIVE_PATTERN.sub("", item.name).lower()
        folder = folders_by_dir.get(parent_dir(item.path), {}).get(base)
        if folder is not None:
            yield _draft(
                item, "delete", "medium", "Archive with extracted contents",
                f'"{item.name}" has already been extracted into the folder "{folder.name}" next to it.',
                0.75,
            )


def deep_folders(items, now) -> Iterable[SuggestionDraft]:
    for folder in _folders(items):
        if (folder.depth or 0) > DEEP_FOLDER_DEPTH:
            yield _draft(
                folder, "structure", "high", "Deeply nested folder",
                f"This folder sits {folder.depth} levels deep. A flatter tree is easier to navigate.",
                0.8,
            )


def sparse_folders(items, now) -> Iterable[SuggestionDraft]:
    file_counts: Dict[str, int] = defaultdict(int)
    for item in _files(items):
        file_counts[parent_dir(item.path)] += 1

    for folder in _folders(items):
        count = file_counts.get(folder.path, 0)
        if 0 < count <= 2 and (folder.depth or 0) > 1:
            noun = "file" if count == 1 else "files"
            yield _draft(
                folder, "structure", "medium", "Sparse folder",
                f"Holds only {count} {noun}. Merging them into the parent folder would simplify the tree.",
                0.7,
            )


def overcrowded_folders(items, now) -> Iterable[SuggestionDraft]:
    child_counts: Dict[str, int] = defaultdict(int)
    for item in items:
        child_counts[parent_dir(item.path)] += 1

    for folder in _folders(items):
        count = child_counts.get(folder.path, 0)
        if count >= OVERCROWDED_CHILDREN:
            yield _draft(
                folder, "structure", "medium", "Overcrowded folder",
                f"Has {count} direct children. Sub-folders by type, date or project would make it browsable.",
                0.75,
            )


RULES: List[Callable] = [
    empty_files,
    temporary_files,
    backup_copies,
    version_suffixes,
    all_caps_names,
    special_characters,
    old_files,
    duplicate_files,
    extracted_archives,
    deep_folders,
    sparse_folders,
    overcrowded_folders,
]


def run_rules(items: Sequence, now: Optional[datetime] = None) -> RulesResult:
    """Run every rule over the inventory in order."""
    now = now or datetime.now(timezone.utc)
    items = list(items)
    result = RulesResult()
    for rule in RULES:
        for draft in rule(items, now):
            result.suggestions.append(draft)
            if draft.file_id is not None:
                result.matched_ids.add(draft.file_id)
    return result


def dedupe_suggestions(drafts: Iterable[SuggestionDraft]) -> List[SuggestionDraft]:
    """Keep the first draft per (item or path, category, title)."""
    seen = set()
    unique = []
    for draft in drafts:
        key = draft.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(draft)
    return unique
