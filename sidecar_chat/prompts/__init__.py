"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取对话场景的 system prompt，
文本中的 {current_date} 会替换为当天日期。
"""

from datetime import date
from pathlib import Path
from typing import Optional


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(locale: str = "en", today: Optional[date] = None) -> str:
    fname = PROMPTS_DIR / locale / "chat_system.md"
    text = fname.read_text(encoding="utf-8").strip()
    return text.replace("{current_date}", (today or date.today()).isoformat())
