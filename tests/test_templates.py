import pytest

from message_templates import MESSAGE_TEMPLATES, UnknownTemplateError, format_message


def test_welcome_substitutes_name():
    text = format_message("welcome", {"name": "Asha"})
    assert text.startswith("Namaste Asha! 🙏")
    assert "{name}" not in text


def test_unfilled_placeholders_are_left_as_is():
    text = format_message("booking_confirmed", {"name": "Asha", "tripName": "Spiti Valley"})
    assert "📍 Trip: Spiti Valley" in text
    assert "📅 Date: {date}" in text
    assert "👥 Guests: {guests}" in text


def test_values_are_converted_to_text():
    text = format_message("booking_confirmed", {"guests": 3, "date": None})
    assert "👥 Guests: 3" in text
    assert "{date}" in text


def test_values_are_not_escaped():
    text = format_message("custom", {"message": "*Bold* _offer_ {name}"})
    assert text == "*Bold* _offer_ {name}"


def test_unknown_template():
    with pytest.raises(UnknownTemplateError):
        format_message("birthday", {"name": "Asha"})


def test_every_scenario_has_a_template():
    assert set(MESSAGE_TEMPLATES) == {
        "welcome", "booking_confirmed", "payment_reminder", "trip_reminder", "follow_up", "custom"
    }
