"""User-facing chat texts sent by the gates and the chat commands."""

from __future__ import annotations

from datetime import datetime

from codebot.config import TIER_CONFIGS, tier_config
from codebot.service.quota import QuotaStatus
from codebot.storage.models import Tier, User

AUTH_ERROR = "❌ Authentication error. Please try again or contact support."
GENERIC_ERROR = "❌ Sorry, I encountered an error processing your message. Please try again."


def format_date(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def welcome(user: User) -> str:
    return (
        "🎉 Welcome to CodeBot!\n\n"
        "I've created your account. Here are your details:\n\n"
        "📊 Your Limits:\n"
        f"• Tier: {Tier(user.tier).value}\n"
        f"• Monthly Messages: {user.message_quota}\n"
        f"• Start Date: {format_date(user.created_at)}\n\n"
        "🔧 How to Use:\n"
        "• Simply describe what you want to code\n"
        "• I'll create files, run commands, and test your code\n"
        "• All operations run in secure sandboxed environments\n\n"
        "Ready to start coding? Send me your first request! 👨‍💻"
    )


def account_deactivated(support_contact: str) -> str:
    return (
        "❌ Your account has been deactivated.\n\n"
        f"Please contact {support_contact} if you believe this is a mistake."
    )


def quota_exceeded(quota: QuotaStatus, support_contact: str) -> str:
    basic = TIER_CONFIGS[Tier.BASIC]
    pro = TIER_CONFIGS[Tier.PRO]
    return (
        "🚨 Message Limit Reached\n\n"
        f"You've used {quota.used} out of {quota.total} messages this period.\n\n"
        "💳 Upgrade Options:\n"
        f"• BASIC: {basic.price} - {basic.message_quota} messages\n"
        f"• PRO: {pro.price} - {pro.message_quota} messages + priority support\n\n"
        f"🔄 Your quota resets on {format_date(quota.reset_date)}.\n\n"
        f"To upgrade, contact: {support_contact}"
    )


HELP = (
    "🆘 CodeBot Help\n\n"
    "💻 Code: write, debug and run scripts in Python, JavaScript, Bash and more.\n"
    "📁 Files: create, edit and read files in a sandbox.\n"
    "🌐 Web: navigate sites, take screenshots, fill forms.\n\n"
    "🔧 Commands:\n"
    "/start - Start the bot\n"
    "/help - Show this help message\n"
    "/status - Check your account status\n"
    "/setkeys - Activate your personal API keys\n"
    "/revoke confirm - Remove your personal API keys\n\n"
    "Just describe what you want to do, and I'll handle the technical details!"
)


def status(user: User, quota: QuotaStatus) -> str:
    config = tier_config(user.tier)
    features = "\n".join(f"• {feature}" for feature in config.features)
    keys = "Personal" if user.has_credentials else "Default"
    return (
        "📊 Your Account Status\n\n"
        f"• Tier: {Tier(user.tier).value}\n"
        f"• Messages Used: {quota.used}/{quota.total}\n"
        f"• Remaining: {quota.remaining}\n"
        f"• Member Since: {format_date(user.created_at)}\n"
        f"• API Keys: {keys}\n\n"
        f"🔧 Features:\n{features}\n\n"
        f"🔄 Next Reset: {format_date(quota.reset_date)}"
    )


def not_registered() -> str:
    return "👋 Send me any message to create your account."


def keys_revoked(revoked: bool) -> str:
    if revoked:
        return "🗑️ Your personal API keys were removed. Your account is back on the FREE tier."
    return "ℹ️ You don't have personal API keys to revoke."


def revoke_confirmation() -> str:
    return (
        "⚠️ Revoking removes your personal keys and moves your account to the FREE tier.\n\n"
        "Send /revoke confirm to continue."
    )


def setkeys(chat_id: str, activation_url: str) -> str:
    return (
        "🔑 Activate Your Personal API Keys\n\n"
        "🚀 Personal keys move your account to the BASIC tier "
        f"({TIER_CONFIGS[Tier.BASIC].message_quota} messages per period) "
        "and use your own provider quotas.\n\n"
        "📝 Steps:\n"
        f"1. Visit: {activation_url}\n"
        f"2. Enter your chat ID: {chat_id}\n"
        "3. Get your API keys:\n"
        "   - Gemini: https://aistudio.google.com/app/apikey\n"
        "   - E2B: https://e2b.dev/\n"
        "4. Submit your keys on the activation page\n\n"
        "🔒 Your keys are encrypted at rest. Remove them anytime with /revoke confirm."
    )


_UNSUPPORTED_KINDS = {
    "photo": "I can see you sent an image",
    "document": "I can see you sent a file",
    "voice": "I received your voice message",
}


def unsupported_message(kind: str) -> str:
    opening = _UNSUPPORTED_KINDS.get(kind, "I received your message")
    return (
        f"{opening}, but I currently only process text messages. "
        "Please describe what you need help with!"
    )
