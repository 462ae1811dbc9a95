from chatrelay.models import (
    NO_TEXT_PLACEHOLDER,
    VISION_PLACEHOLDER,
    ImageTurn,
    TextTurn,
    flatten_content,
    parse_content,
    serialize_content,
)


def test_text_turn_is_stored_as_plain_text():
    assert serialize_content(TextTurn(text="Salom")) == ("Salom", "text")
    assert parse_content("Salom", "text") == TextTurn(text="Salom")


def test_image_turn_is_stored_as_tagged_json():
    turn = ImageTurn(mode="vision", caption="describe", filename="cat.png", media_type="image/png")
    content, content_type = serialize_content(turn)
    assert content_type == "image"
    assert '"kind":"image"' in content
    assert parse_content(content, "image") == turn


def test_unparseable_image_row_reads_as_text():
    assert parse_content("[Rasm yuborildi]", "image") == TextTurn(text="[Rasm yuborildi]")


def test_flatten_image_variants():
    assert flatten_content(ImageTurn(mode="ocr")) == NO_TEXT_PLACEHOLDER
    assert flatten_content(ImageTurn(mode="vision", caption="what breed?")) == f"{VISION_PLACEHOLDER}\n\nwhat breed?"
    assert flatten_content(ImageTurn(mode="ocr", extracted_text="STOP", caption="translate")) == (
        "[Text found in image]: STOP\n\ntranslate"
    )
