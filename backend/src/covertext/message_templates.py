from __future__ import annotations

from .models import MenuTemplateKey

GLOBAL_MENU = (
    "Welcome to CoverText! 📋\n"
    "\n"
    "Reply with:\n"
    "• CARD - Get your insurance card\n"
    "• EXPIRING - Check policy expiration dates\n"
    "• HELP - Show this menu again\n"
    "\n"
    "What can I help you with today?"
)

GLOBAL_MENU_SHORT = "Reply: CARD, EXPIRING, or HELP"

TEMPLATES: dict[MenuTemplateKey, str] = {
    "global.menu": GLOBAL_MENU,
    "global.menu_short": GLOBAL_MENU_SHORT,
}


def render_template(key: MenuTemplateKey) -> str:
    return TEMPLATES[key]
