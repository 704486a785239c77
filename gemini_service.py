import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from forge_models import STAT_NAMES, Character, clamp_stat

logger = logging.getLogger(__name__)

CHARACTER_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING"},
        "class": {"type": "STRING"},
        "description": {"type": "STRING"},
        "health": {"type": "INTEGER"},
        "strength": {"type": "INTEGER"},
        "mana": {"type": "INTEGER"},
        "agility": {"type": "INTEGER"},
    },
    "required": ["name", "class", "description", *STAT_NAMES],
}

DEFAULT_TIMEOUT = 90


class ServiceError(RuntimeError):
    pass


def request_json(url: str, params: Dict[str, str], payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    try:
        resp = requests.post(url, headers=headers, params=params, json=payload, timeout=timeout)
    except requests.RequestException as exc:
        raise ServiceError(f"Gemini request failed: {exc}") from exc
    if resp.status_code >= 400:
        raise ServiceError(f"{resp.status_code} {resp.text}")
    return resp.json()


def gemini_url(settings: Dict[str, Any], model: str) -> str:
    base_url = str(settings.get("base_url", "") or "").rstrip("/")
    return base_url + f"/models/{model}:generateContent"


def gemini_params(settings: Dict[str, Any]) -> Dict[str, str]:
    api_key = str(settings.get("api_key", "") or "").strip()
    if not api_key:
        raise ServiceError("No Gemini API key configured. Set GEMINI_API_KEY or save one in settings.")
    return {"key": api_key}


def response_parts(data: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], List[str]]:
    candidates = data.get("candidates") or []
    if not candidates:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ServiceError(f"Gemini blocked the prompt: {block_reason}")
        raise ServiceError("Gemini returned no candidates.")

    parts: List[Dict[str, Any]] = []
    finish_reasons: List[str] = []
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        finish_reason = str(candidate.get("finishReason", "")).strip()
        if finish_reason:
            finish_reasons.append(finish_reason)
        for part in (candidate.get("content") or {}).get("parts", []) or []:
            if isinstance(part, dict):
                parts.append(part)
    return parts, finish_reasons


def call_gemini_text(settings: Dict[str, Any], prompt: str, schema: Optional[Dict[str, Any]] = None) -> str:
    model = settings.get("text_model", "")
    payload: Dict[str, Any] = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {"temperature": settings.get("temperature", 0.9)},
    }
    if schema:
        payload["generationConfig"]["responseMimeType"] = "application/json"
        payload["generationConfig"]["responseSchema"] = schema
    logger.info("Calling Gemini text model %s", model)
    data = request_json(
        gemini_url(settings, model),
        gemini_params(settings),
        payload,
        settings.get("timeout", DEFAULT_TIMEOUT),
    )
    parts, finish_reasons = response_parts(data)
    combined = "".join(str(part["text"]) for part in parts if part.get("text")).strip()
    if combined:
        return combined
    if finish_reasons:
        raise ServiceError(f"Gemini returned no text. finishReason={','.join(finish_reasons)}")
    raise ServiceError("Gemini returned no text.")


def call_gemini_image(settings: Dict[str, Any], prompt: str, image_uri: Optional[str] = None) -> str:
    """Generate an image, or edit ``image_uri`` when given, and return it as a data URI."""
    model = settings.get("image_model", "")
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    if image_uri:
        mime_type, image_b64 = load_image_b64(settings, image_uri)
        parts.append({"inline_data": {"mime_type": mime_type, "data": image_b64}})
    payload = {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
    }
    logger.info("Calling Gemini image model %s (edit=%s)", model, bool(image_uri))
    data = request_json(
        gemini_url(settings, model),
        gemini_params(settings),
        payload,
        settings.get("timeout", DEFAULT_TIMEOUT),
    )
    response, finish_reasons = response_parts(data)
    for part in response:
        blob = part.get("inlineData") or part.get("inline_data")
        if blob and blob.get("data"):
            mime_type = blob.get("mimeType") or blob.get("mime_type") or "image/png"
            return to_data_uri(mime_type, blob["data"])
    if finish_reasons:
        raise ServiceError(f"Gemini returned no image. finishReason={','.join(finish_reasons)}")
    raise ServiceError("No image data found in Gemini response.")


def to_data_uri(mime_type: str, image_b64: str) -> str:
    return f"data:{mime_type};base64,{image_b64}"


def split_data_uri(uri: str) -> Tuple[str, str]:
    if not uri.startswith("data:") or ";base64," not in uri:
        raise ServiceError("Image is not a base64 data URI.")
    header, image_b64 = uri.split(",", 1)
    mime_type = header[len("data:"):].split(";", 1)[0] or "image/png"
    return mime_type, image_b64


def load_image_b64(settings: Dict[str, Any], uri: str) -> Tuple[str, str]:
    if uri.startswith("data:"):
        return split_data_uri(uri)
    if not uri.startswith(("http://", "https://")):
        raise ServiceError(f"Cannot read image from {uri[:40]}")
    try:
        resp = requests.get(uri, timeout=settings.get("timeout", DEFAULT_TIMEOUT))
    except requests.RequestException as exc:
        raise ServiceError(f"Could not download image: {exc}") from exc
    if resp.status_code >= 400:
        raise ServiceError(f"Could not download image: {resp.status_code}")
    mime_type = (resp.headers.get("Content-Type") or "image/png").split(";", 1)[0].strip()
    return mime_type, base64.b64encode(resp.content).decode("ascii")


def build_character_prompt() -> str:
    return (
        "Invent a brand new fantasy RPG character.\n"
        "Give them an evocative name, a class (for example Warrior, Mage, Rogue, Ranger, Cleric, Bard), "
        "and a vivid two or three sentence description of their appearance and demeanor.\n"
        "Rate their health, strength, mana and agility as whole numbers from 1 to 100 "
        "so the numbers fit the class.\n"
        "Return JSON only."
    )


def build_portrait_prompt(profile: Dict[str, Any]) -> str:
    return (
        "Create a detailed fantasy character portrait, digital painting, dramatic lighting, "
        "upper body, plain dark background.\n"
        f"Character: {profile['name']}, a {profile['class']}.\n"
        f"Appearance: {profile['description']}\n"
        "No text, letters or watermarks in the image."
    )


def build_cartoon_prompt(character: Character) -> str:
    return (
        "Redraw this fantasy character portrait in a bright, playful cartoon style "
        "with bold outlines and flat vibrant colors.\n"
        f"Keep the same character ({character.name}, {character.character_class}), pose, outfit and framing.\n"
        "No text in the image."
    )


def build_backstory_prompt(character: Character) -> str:
    stats = ", ".join(f"{stat} {value}" for stat, value in character.stats.items())
    return (
        "Write an epic backstory for this fantasy character in two or three short paragraphs.\n"
        "Mention where they came from, a defining hardship, and what drives them now.\n"
        "Output plain text only. No markdown or headings.\n\n"
        f"Name: {character.name}\n"
        f"Class: {character.character_class}\n"
        f"Description: {character.description}\n"
        f"Stats: {stats}\n"
    )


def strip_code_fence(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def parse_character_profile(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as exc:
        raise ServiceError(f"Gemini returned invalid character JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ServiceError("Gemini returned character JSON that is not an object.")

    missing = [key for key in CHARACTER_SCHEMA["required"] if data.get(key) in (None, "")]
    if missing:
        raise ServiceError(f"Gemini character is missing fields: {', '.join(missing)}")

    profile = {key: str(data[key]).strip() for key in ("name", "class", "description")}
    for stat in STAT_NAMES:
        profile[stat] = clamp_stat(data[stat])
    return profile


def generate_character(settings: Dict[str, Any]) -> Character:
    profile = parse_character_profile(call_gemini_text(settings, build_character_prompt(), CHARACTER_SCHEMA))
    image_url = call_gemini_image(settings, build_portrait_prompt(profile))
    return Character.from_dict({**profile, "image_url": image_url})


def cartoonify_character(settings: Dict[str, Any], character: Character) -> Character:
    image_url = call_gemini_image(settings, build_cartoon_prompt(character), character.image_url)
    return character.with_image(image_url)


def generate_backstory(settings: Dict[str, Any], character: Character) -> Character:
    backstory = strip_code_fence(call_gemini_text(settings, build_backstory_prompt(character)))
    if not backstory:
        raise ServiceError("Gemini returned an empty backstory.")
    return character.with_backstory(backstory)


class GeminiService:
    """Async facade over the blocking Gemini calls, one worker thread per call."""

    def __init__(self, settings: Dict[str, Any]):
        self.settings = dict(settings)

    async def generate_character(self) -> Character:
        return await asyncio.to_thread(generate_character, self.settings)

    async def cartoonify_character(self, character: Character) -> Character:
        return await asyncio.to_thread(cartoonify_character, self.settings, character)

    async def generate_backstory(self, character: Character) -> Character:
        return await asyncio.to_thread(generate_backstory, self.settings, character)
