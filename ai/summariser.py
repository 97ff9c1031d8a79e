"""AI productivity digests built from the last week of tracked activity."""

import json
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from ai.client import LLMClient
from core.errors import OracleUnavailable
from tracking.analytics import DailyAggregate, format_duration, productivity_score

logger = logging.getLogger(__name__)


class InsightsGenerator:
    """
    Uses the configured AI provider to turn a week of statistics into a
    short productivity digest, with a rule-based fallback when AI is not
    available.
    """

    def __init__(self, store, client: Optional[LLMClient] = None):
        """
        Initialize the generator.

        Args:
            store: SessionStore to read statistics from.
            client: LLMClient (defaults to the configured provider).
        """
        self.store = store
        self.client = client or LLMClient()

        if not self.client.is_configured:
            logger.warning("AI provider not configured. Insights will use fallback text.")

    def build_context(self, days: int = 7, today: date = None) -> Dict[str, Any]:
        """
        Collect the statistics sent to the model.

        Returns:
            Dict with days_tracked, hour totals, top apps, categories,
            focus stats and recent searches. days_tracked is 0 when there
            is no data.
        """
        today = today or date.today()
        stats = [s for s in self.store.get_stats_range(days) if s.date > (today - timedelta(days=days)).isoformat()]

        apps: Dict[str, float] = {}
        categories: Dict[str, float] = {}
        for stat in stats:
            for row in self.store.get_app_breakdown(stat.date):
                apps[row["app_name"]] = apps.get(row["app_name"], 0.0) + (row["total_seconds"] or 0.0)
            for row in self.store.get_category_breakdown(stat.date):
                categories[row["category"]] = categories.get(row["category"], 0.0) + (row["total_seconds"] or 0.0)

        top_apps = sorted(apps.items(), key=lambda item: (-item[1], item[0]))[:5]
        searches = [s["query"] for s in self.store.query_searches(today)][:10]

        return {
            "days_tracked": len(stats),
            "total_tracked_hours": round(sum(s.total_seconds for s in stats) / 3600, 1),
            "productive_hours": round(sum(s.productive_seconds for s in stats) / 3600, 1),
            "distraction_hours": round(sum(s.distraction_seconds for s in stats) / 3600, 1),
            "top_apps": [f"{name} ({seconds / 3600:.1f}h)" for name, seconds in top_apps],
            "categories": [f"{name} ({seconds / 3600:.1f}h)" for name, seconds in sorted(categories.items())],
            "focus_stats": self.store.get_focus_stats(),
            "recent_searches": searches,
            "daily": stats,
        }

    def generate_insights(self, days: int = 7, today: date = None) -> Dict[str, Any]:
        """
        Generate a productivity digest for the last `days` days.

        Returns:
            Dictionary with:
            - insights: Digest text
            - success: True if the AI provider produced it, False for fallback
            - has_data: False when nothing was tracked in the window
        """
        context = self.build_context(days, today)
        if context["days_tracked"] == 0:
            return {"insights": "Not enough data for insights yet.", "success": False, "has_data": False}

        if self.client.is_configured:
            try:
                text = self.client.ask(self._create_prompt(context), system=SYSTEM_PROMPT, max_tokens=600)
                logger.info("Successfully generated insights")
                return {"insights": text, "success": True, "has_data": True}
            except OracleUnavailable as e:
                logger.error(f"AI insights failed, using fallback: {e}")

        return {"insights": self._generate_fallback_insights(context), "success": False, "has_data": True}

    def _create_prompt(self, context: Dict[str, Any]) -> str:
        """
        Create the digest prompt from the statistics context.

        Args:
            context: Output of build_context()

        Returns:
            Formatted prompt string
        """
        summary = {k: v for k, v in context.items() if k != "daily"}
        return f"""You are analyzing someone's activity data from the last week.

Data Summary:
{json.dumps(summary, indent=2, default=str)}

Provide a concise, personalized productivity digest with these sections:
1. Top Achievement: Highlight their best metric or pattern (be specific).
2. Biggest Distraction: Identify where they lose the most time.
3. Action Item: One practical tip for tomorrow.
4. Trend Analysis: How they are trending across the week.

Be encouraging but honest. Keep it to 1-2 sentences per section. Use the exact labels above."""

    def _generate_fallback_insights(self, context: Dict[str, Any]) -> str:
        """
        Build a basic digest without the AI provider.

        Args:
            context: Output of build_context()

        Returns:
            Digest text with the same four sections
        """
        daily: List[DailyAggregate] = context["daily"]
        best = max(daily, key=lambda s: (s.productivity_score, s.date))
        worst_distraction = max(daily, key=lambda s: (s.distraction_seconds, s.date))

        total = sum(s.total_seconds for s in daily)
        productive = sum(s.productive_seconds for s in daily)
        score = productivity_score(productive, total)

        lines = [
            f"Top Achievement: {best.date} was your best day at {best.productivity_score:.0f}% productive "
            f"({format_duration(best.productive_seconds)} of focused work).",
        ]

        if worst_distraction.distraction_seconds > 0:
            lines.append(
                f"Biggest Distraction: {format_duration(worst_distraction.distraction_seconds)} "
                f"of distractions on {worst_distraction.date}."
            )
        else:
            lines.append("Biggest Distraction: No distraction time was recorded. Keep it up!")

        if score < 50:
            lines.append("Action Item: Start tomorrow with a 25 minute focus run before opening chat or media.")
        else:
            lines.append("Action Item: Protect your most productive hours by scheduling deep work into them.")

        if len(daily) >= 2:
            ordered = sorted(daily, key=lambda s: s.date)
            first, last = ordered[0].productivity_score, ordered[-1].productivity_score
            direction = "up" if last > first else "down" if last < first else "flat"
            lines.append(f"Trend Analysis: Productivity is {direction} ({first:.0f}% to {last:.0f}%).")
        else:
            lines.append(f"Trend Analysis: Only one day tracked so far ({score:.0f}% productive).")

        return "\n".join(lines)


SYSTEM_PROMPT = "You are a professional productivity coach who provides encouraging, practical feedback."
