"""
Question Generator - Creates multiple-choice quiz content for a topic using an LLM.

Produces one question per selected topic, plus the title and description of
the short video it will be rendered into. Recent "Subject:Topic" history is
passed into the prompt so consecutive runs do not ask the same thing again.
"""

import json
import logging
import os
import re
import time

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

ANSWER_KEYS = ("A", "B", "C", "D")
REQUIRED_QUESTION_FIELDS = ("text", "option_a", "option_b", "option_c", "option_d", "correct_answer", "explanation")

# Newest history entries that fit in the prompt
PROMPT_HISTORY_LIMIT = 30


def build_question_prompt(class_name: str, subject_name: str, topic_name: str, topics_history: list[str] = None) -> str:
    """Build the prompt for one quiz question on a single topic."""
    history_block = ""
    if topics_history:
        recent = "\n".join(f"- {entry}" for entry in topics_history[:PROMPT_HISTORY_LIMIT])
        history_block = f"""
Recently covered (Subject:Topic). Do not repeat a question from these:
{recent}
"""

    return f"""You are a CBSE teacher writing a quiz question for a YouTube Short.

Class: {class_name}
Subject: {subject_name}
Topic: {topic_name}
{history_block}
Write ONE multiple-choice question on this topic at {class_name} level, with
four options, exactly one correct answer and a one or two sentence explanation.
Keep the question under 200 characters and each option under 60 characters.

Return a JSON object with this EXACT structure (no markdown, just raw JSON):
{{
  "title": "Short catchy video title",
  "description": "One sentence video description",
  "question": {{
    "text": "The question",
    "option_a": "First option",
    "option_b": "Second option",
    "option_c": "Third option",
    "option_d": "Fourth option",
    "correct_answer": "B",
    "explanation": "Why B is correct"
  }}
}}

Return ONLY the JSON, no other text."""


QUIZ_SYSTEM_PROMPT = "You write CBSE board-exam style multiple-choice questions and answer with JSON only."

LLM_RETRY_BACKOFF = float(os.getenv("LLM_RETRY_BACKOFF", "5"))

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _post_json(url: str, payload: dict, timeout: float, params: dict = None) -> dict:
    response = httpx.post(url, json=payload, params=params, timeout=timeout)
    response.raise_for_status()
    return response.json()


def call_ollama(prompt: str, max_retries: int = 3) -> str:
    """
    Ask a local Ollama model for one quiz question.

    Connection and HTTP errors are retried with exponential backoff
    (LLM_RETRY_BACKOFF, doubled per attempt); the last one is raised.
    """
    base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    payload = {
        "model": os.getenv("OLLAMA_MODEL", "llama3.2:3b"),
        "system": QUIZ_SYSTEM_PROMPT,
        "prompt": prompt,
        "stream": False,
        "format": "json",
        "options": {"temperature": 0.7, "num_predict": 1000},
    }

    for attempt in range(max_retries):
        try:
            return _post_json(f"{base_url}/api/generate", payload, timeout=300.0)["response"]
        except httpx.HTTPError as e:
            if attempt == max_retries - 1:
                raise
            delay = LLM_RETRY_BACKOFF * 2 ** attempt
            logger.warning(f"Ollama attempt {attempt+1}/{max_retries} failed: {e}, retrying in {delay:.0f}s")
            time.sleep(delay)


def call_gemini(prompt: str) -> str:
    """Ask Gemini for one quiz question. Blocked or empty replies raise ValueError."""
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ValueError("GEMINI_API_KEY not set")

    model = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
    data = _post_json(
        f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
        {
            "systemInstruction": {"parts": [{"text": QUIZ_SYSTEM_PROMPT}]},
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.7,
                "maxOutputTokens": 1024,
                "responseMimeType": "application/json",
            },
        },
        timeout=60.0,
        params={"key": api_key},
    )
    candidates = data.get("candidates") or []
    parts = candidates[0].get("content", {}).get("parts", []) if candidates else []
    if not parts:
        reason = data.get("promptFeedback", {}).get("blockReason", "no candidates")
        raise ValueError(f"Gemini returned no question: {reason}")
    return "".join(part.get("text", "") for part in parts)


LLM_PROVIDERS = {
    "ollama": call_ollama,
    "gemini": call_gemini,
}


def call_llm(prompt: str) -> str:
    provider = os.getenv("LLM_PROVIDER", "ollama")
    if provider not in LLM_PROVIDERS:
        raise ValueError(f"Unknown LLM_PROVIDER: {provider}")
    return LLM_PROVIDERS[provider](prompt)


def _decode_objects(text: str) -> list[dict]:
    """Decode every top-level JSON object embedded in free text."""
    decoder = json.JSONDecoder(strict=False)
    objects = []
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            objects.append(obj)
        idx = text.find("{", end)
    return objects


def extract_quiz_json(text: str) -> dict:
    """
    Pull the quiz object out of an LLM reply.

    Tolerates markdown fences, chatter around the JSON, raw newlines inside
    strings and trailing commas. When the reply holds several objects, the
    one carrying the question wins.

    Raises:
        ValueError: No JSON object could be decoded.
    """
    cleaned = _FENCE_RE.sub("", text).strip()
    objects = _decode_objects(cleaned) or _decode_objects(_TRAILING_COMMA_RE.sub(r"\1", cleaned))
    if not objects:
        raise ValueError(f"No quiz JSON in LLM response: {text[:300]}...")

    for obj in objects:
        if "question" in obj or "correct_answer" in obj:
            return obj
    return objects[0]


def validate_question(data: dict) -> dict:
    """
    Check that a generated question has every field and a valid answer key.

    Returns:
        A normalized copy with stripped strings and an upper-case answer key.

    Raises:
        ValueError: A field is missing or empty, or the answer is not A-D.
    """
    missing = [field for field in REQUIRED_QUESTION_FIELDS if not str(data.get(field) or "").strip()]
    if missing:
        raise ValueError(f"Generated question is missing fields: {', '.join(missing)}")

    question = {field: str(data[field]).strip() for field in REQUIRED_QUESTION_FIELDS}
    question["correct_answer"] = question["correct_answer"].upper()
    if question["correct_answer"] not in ANSWER_KEYS:
        raise ValueError(f"Invalid correct answer format: {data['correct_answer']}")
    return question


def generate_video_content(class_name: str, selection: dict, topics_history: list[str] = None, max_attempts: int = 3) -> dict:
    """
    Generate the quiz question and video metadata for one selected topic.

    Args:
        class_name: Display name of the class, e.g. "Class 11".
        selection: One entry from select_topics_for_generation.
        topics_history: Recent "Subject:Topic" strings, newest first.
        max_attempts: LLM calls to try before giving up on unparseable output.

    Returns:
        A dict with title, description and a validated question dict.
    """
    prompt = build_question_prompt(
        class_name,
        selection["subject_name"],
        selection["topic_name"],
        topics_history,
    )

    last_error = None
    for attempt in range(max_attempts):
        raw_response = call_llm(prompt)
        try:
            data = extract_quiz_json(raw_response)
            question_data = data.get("question")
            question = validate_question(question_data if isinstance(question_data, dict) else data)
        except ValueError as e:
            last_error = e
            logger.warning(
                f"Question attempt {attempt+1} for {selection['subject_name']}:{selection['topic_name']} "
                f"was invalid: {e}"
            )
            continue

        title = (data.get("title") or f"{selection['topic_name']} Quiz").strip()
        description = (data.get("description") or "").strip() or (
            f"Quiz for {class_name} {selection['subject_name']} - {selection['topic_name']}"
        )
        return {"title": title[:100], "description": description, "question": question}

    raise ValueError(
        f"Failed to generate a valid question for {selection['subject_name']}:"
        f"{selection['topic_name']} after {max_attempts} attempts: {last_error}"
    )
