"""
core/responses.py
─────────────────
Response generators: ReactionOutput → one short line of text.

  TemplateResponseGenerator  phrase pools per reaction; stronger intensity
                             picks from the stronger end of the pool
  OllamaResponseGenerator    asks a local Ollama model, falls back to the
                             template generator on any failure

Text generation sits outside the learning loop: nothing here touches the
profile or the logs.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import httpx
import numpy as np

from core.actions import ReactionOutput, ReactionType

log = logging.getLogger("buddy.responses")

PHRASES: dict[ReactionType, tuple[str, ...]] = {
    ReactionType.EMPATHY:       ("Mm-hm.", "I get it.", "Right?", "I feel that."),
    ReactionType.HUMOR:         ("Heh.", "That's kind of funny.", "Ha!", "You're in good form today."),
    ReactionType.SURPRISE:      ("Oh.", "Ooh.", "Wait, really?", "No way!"),
    ReactionType.CALM:          ("Hmm.", "Not bad.", "Take it slow.", "It's okay."),
    ReactionType.EXCITEMENT:    ("Oh!", "Nice!", "You did it!", "Let's go today!"),
    ReactionType.CONCERN:       ("Hm?", "You okay?", "Don't push too hard.", "I'm a bit worried."),
    ReactionType.ENCOURAGEMENT: ("You've got this.", "Go for it.", "You can do it.", "Keep it up!"),
    ReactionType.CURIOSITY:     ("Huh.", "I see.", "Interesting.", "And then?"),
}
MORNING_GREETINGS = ("Morning!", "Good morning.", "Nice morning.")
EVENING_GREETINGS = ("Long day?", "Evening already.", "Take it easy tonight.")
GREETING_CHANCE = 0.3
DEFAULT_PHRASE = "Hmm."

MAX_REPLY_CHARS = 30
FALLBACK_REPLY = "Hm."


class ResponseGenerator(ABC):
    name: str = "generator"

    @abstractmethod
    def generate(self, output: ReactionOutput, now: Optional[datetime] = None) -> str:
        ...

    def is_ready(self) -> bool:
        return True


class TemplateResponseGenerator(ResponseGenerator):
    name = "template"

    def __init__(self, rng: Optional[np.random.Generator] = None, greeting_chance: float = GREETING_CHANCE) -> None:
        self._rng = rng if rng is not None else np.random.default_rng()
        self.greeting_chance = greeting_chance

    def generate(self, output: ReactionOutput, now: Optional[datetime] = None) -> str:
        hour = (now or datetime.now()).hour
        # Early morning and late night sometimes get a greeting instead
        if self._rng.random() < self.greeting_chance:
            if 5 <= hour <= 9:
                return self._pick(MORNING_GREETINGS)
            if hour >= 22 or hour < 4:
                return self._pick(EVENING_GREETINGS)
        return self.phrase_for(output)

    @staticmethod
    def phrase_for(output: ReactionOutput) -> str:
        candidates = PHRASES.get(output.action.type)
        if not candidates:
            return DEFAULT_PHRASE
        index = int(output.intensity * (len(candidates) - 1))
        return candidates[max(0, min(index, len(candidates) - 1))]

    def _pick(self, pool: tuple[str, ...]) -> str:
        return pool[int(self._rng.integers(len(pool)))]


class OllamaResponseGenerator(ResponseGenerator):
    """
    Usage:
        gen = OllamaResponseGenerator.from_config(config)
        text = gen.generate(output)

    Blocking httpx call; keep it off the event loop (run_in_executor).
    """

    name = "ollama"

    def __init__(
        self,
        model: str = "mistral",
        base_url: str = "http://localhost:11434",
        timeout_s: float = 10.0,
        fallback: Optional[ResponseGenerator] = None,
        persona: str = "",
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.fallback = fallback or TemplateResponseGenerator()
        self.persona = persona

    @classmethod
    def from_config(cls, config, fallback: Optional[ResponseGenerator] = None) -> "OllamaResponseGenerator":
        return cls(
            model=config.get("responses", "model", fallback="mistral"),
            base_url=config.get("responses", "base_url", fallback="http://localhost:11434"),
            timeout_s=config.getfloat("responses", "request_timeout_s", fallback=10.0),
            fallback=fallback,
            persona=config.get("responses", "persona", fallback=""),
        )

    def generate(self, output: ReactionOutput, now: Optional[datetime] = None) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": self.build_prompt(output)}],
            "stream": False,
        }
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                resp = client.post(f"{self.base_url}/api/chat", json=payload)
                resp.raise_for_status()
                raw = resp.json()["message"]["content"]
            return self.sanitize(raw)
        except httpx.ConnectError:
            log.warning("Cannot connect to Ollama, using template response. Run: ollama serve")
        except Exception as exc:
            log.warning(f"Ollama generation failed, using template response: {exc}")
        return self.fallback.generate(output, now)

    def is_ready(self) -> bool:
        try:
            with httpx.Client(timeout=min(self.timeout_s, 5.0)) as client:
                resp = client.get(f"{self.base_url}/api/tags")
                resp.raise_for_status()
                models = [m["name"].split(":")[0] for m in resp.json().get("models", [])]
        except Exception:
            return False
        return any(self.model in m for m in models)

    def build_prompt(self, output: ReactionOutput) -> str:
        lines = []
        if self.persona:
            lines += ["Your personality:", self.persona[:300], ""]
        lines += [
            f"Emotion: {output.action.type.label}",
            f"Intensity: {int(output.intensity * 100)}%",
            "",
            "Instruction: reply with one short casual phrase (under 6 words) that "
            "expresses the emotion above. No emoji, no quotes.",
            "Reply:",
        ]
        return "\n".join(lines)

    @staticmethod
    def sanitize(raw: str) -> str:
        """First non-empty line that is not a 'Reply:' echo, stripped of quotes, max 30 chars."""
        line = next(
            (l.strip() for l in raw.splitlines()
             if l.strip() and not l.strip().lower().startswith("reply")),
            raw.strip(),
        )
        line = re.sub(r"[\"“”「」]", "", line).strip()
        return line[:MAX_REPLY_CHARS].strip() or FALLBACK_REPLY
