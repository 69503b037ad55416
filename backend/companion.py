import random
from typing import List, Optional

COMPANION_RESPONSES = [
    "That's wonderful to hear! How are you feeling today?",
    "Thank you for sharing that with me. Is there anything I can help you with?",
    "I appreciate you telling me that. Would you like to hear a motivational quote?",
    "That sounds lovely! Remember to take care of yourself today.",
    "I'm here to listen. Tell me more about what's on your mind.",
    "Your well-being is important to me. How can I assist you today?",
]

QUICK_ACTIONS = {
    "nature": "Could you play some nature sounds for me?",
    "quote": "Could you share a motivational quote?",
    "memory": "I'd like to share a memory with you.",
    "feeling": "I want to talk about how I'm feeling today.",
}

GREETING = "Hello! I'm here to chat and keep you company. How are you feeling today?"


class ChatCompanion:
    """Scripted companion: every user message gets one canned reply."""

    def __init__(self, store, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    def reply_to(self, message: str) -> str:
        return self.rng.choice(COMPANION_RESPONSES)

    async def post(self, content: str, is_from_user: bool = True) -> List[dict]:
        message = await self.store.create_chat_message(
            {"content": content, "is_from_user": is_from_user}
        )
        if not is_from_user:
            return [message]
        reply = await self.store.create_chat_message(
            {"content": self.reply_to(content), "is_from_user": False}
        )
        return [message, reply]

    async def quick_action(self, action: str) -> List[dict]:
        # unknown actions are sent as typed
        return await self.post(QUICK_ACTIONS.get(action, action))
