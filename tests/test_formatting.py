import pytest

from app.services.formatting import markdown_to_whatsapp


class TestMarkdownToWhatsapp:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("**Green Tea** is in stock", "*Green Tea* is in stock"),
            ("Use code `SKU-001`", "Use code ```SKU-001```"),
            ("~~4.99~~ now 4.50", "~4.99~ now 4.50"),
            ("**a** and **b**", "*a* and *b*"),
        ],
    )
    def test_converts_markdown(self, text, expected):
        assert markdown_to_whatsapp(text) == expected

    def test_plain_text_unchanged(self):
        assert markdown_to_whatsapp("Hello, how can I help?") == "Hello, how can I help?"

    def test_whatsapp_bold_left_alone(self):
        assert markdown_to_whatsapp("*already bold*") == "*already bold*"

    def test_empty(self):
        assert markdown_to_whatsapp("") == ""
