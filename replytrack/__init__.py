"""replytrack - WhatsApp response correlation engine."""
