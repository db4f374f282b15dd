"""
Pre-defined WhatsApp message templates for common lead scenarios
Placeholders use {name} style tokens and are substituted literally.
"""
import re
from typing import Dict, Any, Optional

PLACEHOLDER = re.compile(r"\{(\w+)\}")


class UnknownTemplateError(Exception):
    pass


MESSAGE_TEMPLATES = {
    "welcome": """Namaste {name}! 🙏

Greetings from *Tripnezt* - Your Trusted Travel Partner!

Thank you for your interest in our travel packages.

How can I assist you today?

*Why Choose Tripnezt?*
✓ Authentic India Experiences
✓ Best Prices Guaranteed
✓ 24/7 Support
✓ Verified Local Partners

Looking forward to plan your next adventure! 🌍✈️""",

    "booking_confirmed": """🎉 Your booking has been confirmed!

Dear {name},

Thank you for choosing Tripnezt for your travel adventure.

*Booking Details:*
📍 Trip: {tripName}
📅 Date: {date}
👥 Guests: {guests}

We will send you detailed information shortly.

For any queries, feel free to reach out!""",

    "payment_reminder": """💰 Payment Reminder

Dear {name},

This is a friendly reminder regarding your pending payment for {tripName}.

*Amount Due: {amount}*

Please complete the payment to confirm your booking.

If you have any questions, please let us know!""",

    "trip_reminder": """✈️ Trip Reminder

Dear {name},

Your exciting journey ({tripName}) is just around the corner!

📅 Departure: {date}
📍 Meeting Point: {location}

*Please ensure:*
✓ All travel documents are ready
✓ Payment is completed
✓ Packing is done

See you soon! 🌍""",

    "follow_up": """👋 Following up on your inquiry

Dear {name},

We wanted to check if you have any questions about our travel packages.

Our team is here to help you plan the perfect trip!

*Special Offer:* Book within 48 hours and get 10% off on select packages.

Feel free to reach out!""",

    # Free text written by the operator
    "custom": "{message}",
}


def format_message(template_key: str, substitutions: Optional[Dict[str, Any]] = None) -> str:
    """
    Fill a template's placeholders.

    Values are inserted as-is (no escaping of WhatsApp markdown).
    Placeholders without a value are left in the text untouched.
    """
    if template_key not in MESSAGE_TEMPLATES:
        raise UnknownTemplateError(f"Template '{template_key}' not found")

    values = substitutions or {}

    def replace(match):
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return PLACEHOLDER.sub(replace, MESSAGE_TEMPLATES[template_key])
