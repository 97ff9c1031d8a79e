"""
Relevance oracle for focus sessions.

Answers one question: does this browser tab still serve the declared goal?
Any failure (no key, network error, odd answer) is treated as "relevant"
so an outage never turns a focus run into a distraction.
"""

import logging
import re
import threading
from typing import Callable, Optional

from ai.client import LLMClient
from core.errors import OracleUnavailable

logger = logging.getLogger(__name__)

RELEVANCE_SYSTEM_PROMPT = "You judge whether a browser tab is relevant to someone's work goal."

# Leading YES or NO as a whole word; "Not sure" or "Unknown" do not count
_VERDICT_RE = re.compile(r"^\W*(YES|NO)\b", re.IGNORECASE)


class RelevanceOracle:
    """
    YES/NO relevance judgement backed by an LLMClient.

    check_relevance() blocks; check_relevance_async() runs the same check
    on a daemon thread and hands the verdict to a callback.
    """

    def __init__(self, client: Optional[LLMClient] = None):
        self.client = client or LLMClient()

    @property
    def is_configured(self) -> bool:
        return self.client.is_configured

    def _create_prompt(self, goal: str, title: str) -> str:
        return (
            f'Task Goal: "{goal}"\n'
            f'Window/Tab Title: "{title}"\n\n'
            "Is this window/tab title likely relevant or necessary for the task goal?\n"
            "Consider broad categories (researching for the goal is relevant).\n"
            'Return ONLY "YES" or "NO".'
        )

    def check_relevance(self, goal: str, title: str) -> bool:
        """
        Ask whether `title` is relevant to `goal`.

        Returns:
            False only when the provider clearly answers NO; True otherwise.
        """
        if not self.client.is_configured:
            return True

        try:
            answer = self.client.ask(
                self._create_prompt(goal, title),
                system=RELEVANCE_SYSTEM_PROMPT,
                temperature=0.0,
                max_tokens=5,
            )
        except OracleUnavailable as e:
            logger.warning(f"Relevance check unavailable, assuming relevant: {e}")
            return True

        answer = answer or ""
        match = _VERDICT_RE.match(answer)
        if match and match.group(1).upper() == "YES":
            return True
        if match:
            logger.debug(f"Tab judged off-goal: {title[:60]}")
            return False
        logger.debug(f"Unrecognised relevance answer '{answer[:20]}', assuming relevant")
        return True

    def check_relevance_async(self, goal: str, title: str, callback: Callable[[str, bool], None]) -> threading.Thread:
        """
        Run check_relevance on a daemon thread.

        Args:
            goal: Focus goal label.
            title: Window title being judged.
            callback: Called as callback(title, verdict) when done.

        Returns:
            The started thread.
        """
        def worker():
            try:
                verdict = self.check_relevance(goal, title)
            except Exception:
                logger.exception("Relevance check crashed, assuming relevant")
                verdict = True
            callback(title, verdict)

        thread = threading.Thread(target=worker, name="relevance-check", daemon=True)
        thread.start()
        return thread
