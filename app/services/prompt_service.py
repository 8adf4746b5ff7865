"""Prompt and output-schema contract for complaint analysis.

The prompt is a pure function of the session, its transcript and the
complainant profile, so identical inputs always produce identical prompts.
Only user-authored text reaches the model: bot replies, system notes and
command tokens are stripped.
"""

import json
import re
from datetime import datetime
from typing import Iterable, Optional

SENTIMENTS = ("positive", "neutral", "negative")
SEVERITIES = ("low", "medium", "high", "critical")

CATEGORY_DEFINITIONS = {
    "workplace_harassment": "Bullying, inappropriate behavior, hostile work environment",
    "discrimination": "Based on protected characteristics (race, gender, age, etc.)",
    "unfair_treatment": "Favoritism, unequal treatment, bias",
    "work_conditions": "Physical environment, equipment, workspace issues",
    "management_issues": "Poor supervision, leadership problems, communication gaps",
    "compensation_benefits": "Pay disputes, benefits issues, overtime problems",
    "workload_stress": "Excessive work, unrealistic deadlines, work-life balance",
    "safety_concerns": "Physical safety, health hazards, security issues",
    "policy_violations": "Company policy breaches, procedural issues",
    "communication_issues": "Information gaps, unclear expectations, miscommunication",
    "other": "Issues that don't fit other categories",
}
CATEGORIES = tuple(CATEGORY_DEFINITIONS)

RESPONSE_SHAPE = {
    "sentiment_analysis": {
        "overall_sentiment": "|".join(SENTIMENTS),
        "sentiment_score": "number between -1 and 1",
        "confidence_level": "number between 0 and 1",
    },
    "issue_classification": {
        "primary_category": "|".join(CATEGORIES),
        "secondary_categories": ["up to 3 categories from the same list"],
        "severity_level": "|".join(SEVERITIES),
        "urgency_score": "integer between 1 and 10",
    },
    "key_phrases": {
        "keywords": [
            {
                "word": "string",
                "frequency": "integer (min 1)",
                "relevance_score": "number between 0 and 1",
            }
        ],
        "key_phrases": ["important phrases"],
        "emotional_indicators": ["emotional words or phrases"],
    },
    "ai_summary": "string (max 1000 characters)",
    "recommended_actions": ["recommended actions (max 200 characters each)"],
}

COMMAND_PREFIX_RE = re.compile(r"^\s*/(complain|complaint|start|submit|done)\b\s*", re.IGNORECASE)


def clean_user_message(message: Optional[str]) -> str:
    """Strip leading command tokens; an all-command message becomes empty."""
    cleaned = (message or "").strip()
    while True:
        stripped = COMMAND_PREFIX_RE.sub("", cleaned, count=1)
        if stripped == cleaned:
            break
        cleaned = stripped.strip()
    return cleaned


def extract_user_texts(entries: Iterable) -> list[str]:
    """User-authored text entries in arrival order, cleaned and non-empty."""
    texts = []
    for entry in sorted(entries, key=lambda e: e.seq):
        if entry.direction != "user" or entry.kind != "text":
            continue
        cleaned = clean_user_message(entry.body)
        if cleaned:
            texts.append(cleaned)
    return texts


def session_duration_minutes(start_time: Optional[datetime], end_time: Optional[datetime]) -> Optional[int]:
    if not start_time or not end_time:
        return None
    return max(0, round((end_time - start_time).total_seconds() / 60))


def build_analysis_prompt(
    *,
    complaint_id: str,
    display_name: Optional[str],
    department: Optional[str],
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    entry_count: int,
    user_texts: list[str],
) -> str:
    duration = session_duration_minutes(start_time, end_time)
    duration_text = f"{duration} minutes" if duration is not None else "Ongoing"
    transcript = "\n".join(f"- {text}" for text in user_texts) or "- (no text provided)"
    categories = "\n".join(f"- {name}: {definition}" for name, definition in CATEGORY_DEFINITIONS.items())
    shape = json.dumps(RESPONSE_SHAPE, indent=2, ensure_ascii=False)

    sections = [
        "You are an assistant that analyzes employee workplace complaints for an HR team.\n"
        "Analyze the complaint below and answer with a single JSON object.",
        f"COMPLAINT ID: {complaint_id}",
        f"SESSION DURATION: {duration_text}",
        "PARTICIPANTS:\n"
        f"- Employee: {display_name or 'Unknown'}\n"
        f"- Department: {department or 'Unknown'}\n"
        f"- Total transcript entries: {entry_count}",
        f"EMPLOYEE MESSAGES:\n{transcript}",
        "ANALYSIS REQUIREMENTS:\n"
        "1. Sentiment: overall sentiment, score from -1 to 1, confidence from 0 to 1\n"
        "2. Classification: one primary category, up to 3 secondary categories, severity, urgency from 1 to 10\n"
        "3. Key phrases: keywords with frequency and relevance, key phrases, emotional indicators\n"
        "4. Summary: 2-3 sentences\n"
        "5. Recommended actions: 2-4 specific actions for HR",
        f"CATEGORIES (use only these values):\n{categories}",
        f"RESPONSE FORMAT (valid JSON, exactly this shape):\n{shape}",
        "Respond with ONLY the JSON object. No markdown, no explanations.",
    ]
    return "\n\n".join(sections)


def build_prompt_for_session(session, entries: list, profile=None) -> str:
    """Build the prompt from stored rows (ComplaintSession, TranscriptEntry list, Employee)."""
    return build_analysis_prompt(
        complaint_id=session.complaint_id,
        display_name=profile.display_name if profile else None,
        department=session.department or (profile.department if profile else None),
        start_time=session.start_time,
        end_time=session.end_time,
        entry_count=len(entries),
        user_texts=extract_user_texts(entries),
    )
