"""Gemini Vision integration that scores citizen photos against the issue categories."""
import json
import os
import re
import time
from typing import Any, Dict, List

import requests
from flask import current_app
from google import genai
from google.genai import types

from models import ISSUE_CATEGORIES
from utils.classification_policy import clamp_confidence, normalize_category
from utils.errors import ClassifierUnavailable

ALLOWED_IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
# Applied when the model answers with a label outside the enumeration.
FALLBACK_CONFIDENCE_PENALTY = 0.2
FALLBACK_CONFIDENCE_FLOOR = 0.3


def _first_json_block(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start : end + 1]
    return text


def _safe_json_loads(raw_text: str) -> Dict[str, Any]:
    """Parse JSON robustly, tolerating code fences or leading chatter."""
    cleaned = raw_text.strip()
    cleaned = re.sub(r"^```[a-zA-Z0-9_-]*", "", cleaned).strip()
    cleaned = re.sub(r"```$", "", cleaned).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        return json.loads(_first_json_block(cleaned))


def _coerce_str(value: Any, field: str, required: bool = True) -> str | None:
    if value is None:
        if required:
            raise ClassifierUnavailable(f"Missing required field: {field}")
        return None
    text = str(value).strip()
    if required and not text:
        raise ClassifierUnavailable(f"Missing required field: {field}")
    return text or None


def build_classification_prompt(citizen_category: str | None, image_count: int) -> str:
    categories = ", ".join(ISSUE_CATEGORIES)
    plural = "these images" if image_count > 1 else "this image"
    hint = f"The citizen selected '{citizen_category}'. " if citizen_category else ""
    return (
        "You classify civic infrastructure problems reported by citizens to a city government. "
        f"Analyse {plural} of a single reported problem and give one consolidated verdict. "
        f"{hint}"
        f"Choose exactly one category from: {categories}. "
        "Category guide: pothole (road surface damage, holes, cracks), garbage (trash, overflowing bins, litter, dumping), "
        "streetlight (broken or dark street lamps), graffiti (vandalism, paint on public property), "
        "water (leaks, flooding, burst pipes, sewer problems), traffic (signals, signs, road markings), "
        "sidewalk (broken walkways, pavement hazards), other (anything else). "
        "Return strict JSON only, no markdown, with fields: "
        "category (exact name from the list), confidence (0-1, how sure you are), "
        "explanation (one short sentence describing what is visible). "
        "If the image is unclear, choose the closest match with lower confidence. "
        'Example: {"category": "pothole", "confidence": 0.87, "explanation": "Large hole in the asphalt lane."}'
    )


def _fetch_image(url: str, timeout: float, max_bytes: int) -> types.Part:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise ClassifierUnavailable(f"Could not fetch image {url}") from exc

    mime_type = (response.headers.get("Content-Type") or "image/jpeg").split(";")[0].strip().lower()
    if mime_type not in ALLOWED_IMAGE_MIME_TYPES:
        raise ClassifierUnavailable(f"Unsupported image type {mime_type}")
    if len(response.content) > max_bytes:
        raise ClassifierUnavailable("Image exceeds classifier size limit")
    return types.Part.from_bytes(data=response.content, mime_type=mime_type)


def _response_text(response) -> str:
    raw_text = (getattr(response, "text", None) or "").strip()
    if raw_text:
        return raw_text
    candidates = getattr(response, "candidates", None) or []
    if candidates and candidates[0].content:
        return "".join(getattr(p, "text", "") or "" for p in candidates[0].content.parts or []).strip()
    return ""


def _parse_result(raw_text: str) -> Dict[str, Any]:
    if not raw_text:
        raise ClassifierUnavailable("Gemini Vision returned empty response")
    try:
        payload = _safe_json_loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ClassifierUnavailable("Gemini Vision returned non-JSON output") from exc
    if not isinstance(payload, dict):
        raise ClassifierUnavailable("Gemini Vision returned an unexpected payload")

    label = _coerce_str(payload.get("category"), "category")
    if payload.get("confidence") in (None, ""):
        raise ClassifierUnavailable("Missing required field: confidence")
    confidence = clamp_confidence(payload.get("confidence"))

    category = normalize_category(label)
    if label.lower() not in ISSUE_CATEGORIES:
        confidence = max(FALLBACK_CONFIDENCE_FLOOR, confidence - FALLBACK_CONFIDENCE_PENALTY)

    return {
        "category": category,
        "confidence": confidence,
        "explanation": _coerce_str(payload.get("explanation"), "explanation", required=False),
        "raw_category": label,
    }


def classify_issue_images(image_urls: List[str], citizen_category: str | None = None) -> Dict[str, Any]:
    """Return {category, confidence, explanation}; raises ClassifierUnavailable on any failure."""
    if not image_urls:
        raise ClassifierUnavailable("No images supplied for classification")

    api_key = current_app.config.get("GEMINI_API_KEY") or os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ClassifierUnavailable("GEMINI_API_KEY is not configured")

    timeout = float(current_app.config.get("CLASSIFIER_TIMEOUT_SECONDS", 10))
    max_retries = int(current_app.config.get("CLASSIFIER_MAX_RETRIES", 1))
    max_bytes = int(current_app.config.get("MAX_CLASSIFIER_IMAGE_BYTES", 8 * 1024 * 1024))
    model_name = current_app.config.get("GEMINI_VISION_MODEL", "gemini-2.5-flash")

    parts = [_fetch_image(url, timeout, max_bytes) for url in image_urls]
    parts.append(types.Part.from_text(text=build_classification_prompt(citizen_category, len(image_urls))))

    client = genai.Client(api_key=api_key, http_options=types.HttpOptions(timeout=int(timeout * 1000)))

    current_app.logger.info(
        "Dispatching Gemini Vision classification",
        extra={"images": len(image_urls), "citizen_category": citizen_category, "model": model_name},
    )

    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            response = client.models.generate_content(
                model=model_name,
                contents=parts,
                config=types.GenerateContentConfig(response_mime_type="application/json", temperature=0.1),
            )
            return _parse_result(_response_text(response))
        except ClassifierUnavailable as exc:
            last_error = exc
        except Exception as exc:  # pragma: no cover - relies on remote service
            last_error = exc
        current_app.logger.warning(
            "Gemini Vision attempt failed",
            extra={"attempt": attempt + 1, "error": str(last_error)},
        )
        if attempt < max_retries:
            time.sleep(1.0 * (attempt + 1))

    raise ClassifierUnavailable(f"Gemini Vision classification failed: {last_error}") from last_error
