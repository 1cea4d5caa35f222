"""
Optional LLM pass over inventory items the rules engine did not claim.

Talks to Groq through its OpenAI-compatible endpoint. Each chunk is one
chat completion in JSON mode; a failing chunk is logged and skipped so a
partial AI pass never costs the rules-only results.
"""

import json
from collections import OrderedDict
from typing import Any, Dict, List, Literal, Optional, Sequence

from openai import OpenAI
from pydantic import BaseModel, Field, ValidationError

from config import config
from services.rules_engine import SuggestionDraft
from utils.prometheus import AI_CHUNK_FAILURES
from utils.structured_logging import analysis_logger

SYSTEM_PROMPT = """You review SharePoint document libraries using the 5S method (sort, set in order, shine, standardize, sustain).
The files you receive were not matched by any deterministic cleanup rule, so look for what only judgement can catch.

Answer with a single JSON object:
{
  "suggestions": [
    {
      "category": "delete|archive|rename|structure",
      "severity": "low|medium|high|critical",
      "title": "Short label",
      "description": "Reason for the recommendation",
      "file_path": "/exact/path/as/given.ext",
      "suggested_value": "new-name.ext, /new/path, or null",
      "confidence": 0.0 to 1.0
    }
  ]
}

Worth flagging:
- Files that serve the same purpose under different names ("Budget Q1" vs "Q1 Financial Plan")
- Names that say nothing useful, with a better one drawn from the folder and nearby files
- Files stored in the wrong folder for their type or subject
- Whole folders that look like finished or abandoned projects
- Folders mixing unrelated kinds of content

Guidelines:
- Recommend delete only when clearly safe; otherwise recommend archive
- Never recommend deleting compliance, regulatory, IEP, student record, board minute or accreditation documents
- Calibrate confidence: 0.5 means unsure, 0.8 means likely, 0.95 and above means certain
- Use file_path values exactly as they appear in the input
- Return an empty suggestions array when nothing stands out"""


class AISuggestion(BaseModel):
    category: Literal["delete", "archive", "rename", "structure"]
    severity: Literal["low", "medium", "high", "critical"]
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    file_path: str = Field(..., min_length=1)
    suggested_value: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)


class AIResponseError(Exception):
    pass


def is_ai_available() -> bool:
    return bool(config.GROQ_API_KEY)


def top_level_segment(path: str) -> str:
    parts = [part for part in (path or "").split("/") if part]
    return parts[0] if parts else "root"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def file_payload(item) -> Dict[str, Any]:
    return {
        "path": item.path,
        "name": item.name,
        "extension": item.file_extension,
        "size": item.size_bytes,
        "is_folder": item.is_folder,
        "depth": item.depth,
        "created": _iso(item.created_at_sp),
        "modified": _iso(item.modified_at_sp),
        "created_by": item.created_by,
        "modified_by": item.modified_by,
    }


def chunk_files(items: Sequence, chunk_size: Optional[int] = None) -> List[List[Any]]:
    """
    Group items by top-level path segment and pack whole groups into chunks
    of at most ``chunk_size`` items. A group is never split; one larger than
    the limit ends up alone in its own chunk.
    """
    chunk_size = chunk_size or config.AI_CHUNK_SIZE
    groups: "OrderedDict[str, list]" = OrderedDict()
    for item in items:
        groups.setdefault(top_level_segment(item.path), []).append(item)

    chunks: List[List[Any]] = []
    current: List[Any] = []
    for group in groups.values():
        if current and len(current) + len(group) > chunk_size:
            chunks.append(current)
            current = []
        current.extend(group)
    if current:
        chunks.append(current)
    return chunks


def parse_suggestions(content: Optional[str]) -> List[AISuggestion]:
    """Decode a completion body; entries that fail validation are dropped."""
    if not content:
        raise AIResponseError("Empty response from classifier")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise AIResponseError(f"Classifier returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AIResponseError("Classifier response is not a JSON object")

    parsed = []
    for raw in data.get("suggestions") or []:
        try:
            parsed.append(AISuggestion.model_validate(raw))
        except ValidationError as e:
            analysis_logger.warning(
                action="parse_ai_suggestion",
                message=f"Dropping invalid AI suggestion: {e.errors()[0].get('msg') if e.errors() else e}",
            )
    return parsed


class AIClassifier:
    def __init__(self, client: Optional[OpenAI] = None):
        self.model = config.GROQ_MODEL
        self.client = client or OpenAI(api_key=config.GROQ_API_KEY, base_url=config.GROQ_BASE_URL)

    def classify(self, payload: Dict[str, Any]) -> List[AISuggestion]:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(payload, default=str)},
            ],
            temperature=0.3,
            max_tokens=4096,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content if response.choices else None
        return parse_suggestions(content)

    def analyze(self, items: Sequence, uncaught: Sequence, matched_count: int, scan_id: Optional[str] = None) -> List[SuggestionDraft]:
        """
        Classify ``uncaught`` chunk by chunk. ``items`` is the full inventory,
        used for the summary counts and for mapping paths back to rows.
        """
        by_path = {}
        for item in items:
            by_path.setdefault(item.path, item)

        summary = {
            "total_files": sum(1 for item in items if not item.is_folder),
            "total_folders": sum(1 for item in items if item.is_folder),
            "uncaught_count": len(uncaught),
            "rules_matched_count": matched_count,
        }

        drafts: List[SuggestionDraft] = []
        chunks = chunk_files(uncaught)
        for index, chunk in enumerate(chunks):
            payload = dict(summary, files=[file_payload(item) for item in chunk])
            try:
                suggestions = self.classify(payload)
            except Exception as e:
                AI_CHUNK_FAILURES.inc()
                analysis_logger.error(
                    action="ai_chunk",
                    message=f"AI analysis failed for chunk {index + 1}/{len(chunks)}",
                    error=e,
                    scan_id=scan_id,
                )
                continue

            for s in suggestions:
                matched = by_path.get(s.file_path)
                drafts.append(SuggestionDraft(
                    file_id=matched.id if matched is not None else None,
                    category=s.category,
                    severity=s.severity,
                    title=s.title,
                    description=s.description or "",
                    current_value=s.file_path,
                    suggested_value=s.suggested_value,
                    confidence=s.confidence,
                    source="ai",
                ))

            analysis_logger.info(
                action="ai_chunk",
                message=f"Chunk {index + 1}/{len(chunks)} returned {len(suggestions)} suggestion(s)",
                scan_id=scan_id,
                chunk_items=len(chunk),
            )
        return drafts
