import json
import logging
from datetime import date

from sidecar_chat.infrastructure.logging.logger import JsonFormatter
from sidecar_chat.prompts import load_system_prompt


def test_json_formatter_merges_extra_fields():
    record = logging.LogRecord("sidecar_chat", logging.INFO, __file__, 1, "Sidecar request attempt", None, None)
    record.extra = {"attempt": 2, "conversation_id": "c1"}
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "Sidecar request attempt"
    assert payload["level"] == "INFO"
    assert payload["attempt"] == 2
    assert payload["conversation_id"] == "c1"
    assert payload["ts"].endswith("Z")


def test_load_system_prompt_fills_date():
    prompt = load_system_prompt(today=date(2025, 3, 1))
    assert prompt.startswith("You are a helpful AI assistant.")
    assert "Current date: 2025-03-01" in prompt
