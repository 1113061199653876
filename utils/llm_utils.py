"""
LLM response parsing helpers.

Gemini usually honours JSON mode, but some models still wrap the payload
in markdown code fences. parse_llm_json strips them before decoding.
"""
import json


def parse_llm_json(text: str):
    """Strip markdown code fences from an LLM response and decode the JSON.

    Supported shapes:
      - ```json ... ```
      - ``` ... ```
      - bare JSON

    Raises:
        ValueError: empty text or undecodable payload (json.JSONDecodeError
            is a ValueError subclass).
    """
    if text is None or not text.strip():
        raise ValueError("Empty LLM response")
    text = text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 3:
            inner = parts[1]
            if inner.startswith("json"):
                inner = inner[4:]
            text = inner.strip()
        else:
            # missing closing fence
            text = text.split("\n", 1)[1] if "\n" in text else text[3:]
            if text.endswith("```"):
                text = text[:-3]
            text = text.strip()
    return json.loads(text)
