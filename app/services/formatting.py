import re

BOLD_PATTERN = re.compile(r"\*\*(.+?)\*\*")
CODE_PATTERN = re.compile(r"`([^`]+)`")
STRIKE_PATTERN = re.compile(r"~~(.+?)~~")


def markdown_to_whatsapp(text: str) -> str:
    """Map markdown bold, inline code and strikethrough to WhatsApp delimiters."""
    if not text:
        return text
    text = BOLD_PATTERN.sub(r"*\1*", text)
    text = CODE_PATTERN.sub(r"```\1```", text)
    text = STRIKE_PATTERN.sub(r"~\1~", text)
    return text
