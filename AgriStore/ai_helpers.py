"""
Optional helpers for the admin product form: AI-written descriptions, unit
suggestions and stock photo search. Any failure here only means the admin
fills the form in by hand.
"""
import json
import logging
import re
from typing import List, Optional

import requests
from fastapi import Depends
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from errors import StoreError
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert agricultural product description writer. Generate professional, "
    "informative product descriptions for farmers and agricultural professionals."
)

DESCRIPTION_PROMPT = """Generate COMPLETE and MEANINGFUL product descriptions for "{product_name}" in the {category} category{subcategory}.

Write TWO separate descriptions of 70-90 words each, both ending with a complete sentence:
1. ENGLISH: clear, professional English focused on agricultural benefits and features.
2. HINDI: fluent Hindi in Devanagari script, using agricultural Hindi terminology.

Format your response EXACTLY as:
ENGLISH: [English description]
HINDI: [Hindi description]"""

UNITS_PROMPT = """Suggest purchasable pack sizes for "{product_name}" ({category}).
The admin is adding the unit "{current_unit}"; existing units are: {existing}.
Respond with a JSON array only, each element {{"number": <float>, "type": "<kg|g|litre|ml|packet|piece>"}}."""


class AIHelperError(StoreError):
    status_code = 502


def get_chat_model(settings: Settings = Depends(get_settings)) -> ChatOpenAI:
    if not settings.OPENAI_API_KEY:
        raise AIHelperError("OpenAI API key not configured")
    return ChatOpenAI(model=settings.OPENAI_MODEL, api_key=settings.OPENAI_API_KEY, temperature=0.7, max_retries=2)


def _ask(llm, prompt: str) -> str:
    try:
        result = llm.invoke([SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)])
    except Exception as exc:
        logger.warning("AI helper call failed: %s", exc)
        raise AIHelperError("Failed to generate content")
    return (result.content or "").strip()


def parse_description(text: str) -> dict:
    english = re.search(r"ENGLISH:\s*(.+?)(?=HINDI:|$)", text, re.S)
    hindi = re.search(r"HINDI:\s*(.+?)$", text, re.S)
    english = english.group(1).strip() if english else ""
    hindi = hindi.group(1).strip() if hindi else ""
    if not english and not hindi:
        english = hindi = text.strip()
    return {"english": english, "hindi": hindi}


def generate_description(llm, product_name: str, category: str, subcategory: Optional[str] = None) -> dict:
    prompt = DESCRIPTION_PROMPT.format(
        product_name=product_name,
        category=category,
        subcategory=f", specifically {subcategory}" if subcategory else "",
    )
    return parse_description(_ask(llm, prompt))


def suggest_units(llm, product_name: str, category: str, current_unit: str, existing_units: List[str]) -> List[dict]:
    prompt = UNITS_PROMPT.format(
        product_name=product_name,
        category=category,
        current_unit=current_unit,
        existing=", ".join(existing_units) or "none",
    )
    text = _ask(llm, prompt)
    match = re.search(r"\[.*\]", text, re.S)
    try:
        suggestions = json.loads(match.group(0)) if match else []
    except json.JSONDecodeError:
        logger.warning("Unparseable unit suggestions: %s", text[:200])
        raise AIHelperError("Failed to generate unit suggestions")
    taken = {u.strip().lower() for u in existing_units}
    fresh = []
    for s in suggestions:
        try:
            label = f"{float(s['number']):g} {s['type']}"
        except (TypeError, ValueError, KeyError):
            continue
        if label.lower() not in taken:
            fresh.append({"number": float(s["number"]), "type": s["type"], "label": label})
    return fresh


def search_images(settings: Settings, query: str, count: int = 12) -> List[dict]:
    if not settings.UNSPLASH_ACCESS_KEY:
        raise AIHelperError("Unsplash API key not configured")
    try:
        response = requests.get(
            f"{settings.UNSPLASH_API_URL}/search/photos",
            params={"query": query, "per_page": count, "orientation": "landscape"},
            headers={"Authorization": f"Client-ID {settings.UNSPLASH_ACCESS_KEY}"},
            timeout=10,
        )
        response.raise_for_status()
        results = response.json().get("results", [])
    except (requests.RequestException, ValueError) as exc:
        logger.warning("Unsplash search for %r failed: %s", query, exc)
        raise AIHelperError("Failed to fetch images from Unsplash")
    return [
        {
            "id": photo.get("id"),
            "url": photo.get("urls", {}).get("regular"),
            "thumb": photo.get("urls", {}).get("thumb"),
            "alt": photo.get("alt_description") or photo.get("description") or query,
            "photographer": photo.get("user", {}).get("name"),
        }
        for photo in results
    ]
