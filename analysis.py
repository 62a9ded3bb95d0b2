"""
Narrative flock analysis backed by a hosted generative model.

The analyst is built once from configuration and handed to whoever needs it;
nothing in this module reaches for environment variables or keeps a client
at module level.
"""

import json
import logging
import re

import openai
from openai import OpenAI

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'gpt-4o-mini'
ALERT_LEVELS = ('LOW', 'MEDIUM', 'HIGH')
RECENT_LOG_COUNT = 7

SYSTEM_PROMPT = (
    "You are an expert poultry farm veterinarian and operations manager. "
    "Always answer with a JSON object with the keys 'analysis' (string), "
    "'recommendations' (array of strings) and 'alertLevel' (one of LOW, MEDIUM, HIGH)."
)

_DATA_URL_PREFIX = re.compile(r'^data:image/(png|jpg|jpeg);base64,')


def make_result(analysis, recommendations=None, alert_level='LOW'):
    if isinstance(recommendations, str):
        recommendations = [recommendations]
    return {
        'analysis': analysis,
        'recommendations': [str(r) for r in recommendations or []],
        'alert_level': alert_level if alert_level in ALERT_LEVELS else 'LOW',
    }


def log_to_dict(log):
    return {
        'day': log.day,
        'date': log.date.isoformat() if hasattr(log.date, 'isoformat') else log.date,
        'mortality': log.mortality or 0,
        'mortalityReason': log.mortality_reason,
        'feedConsumedKg': log.feed_consumed_kg or 0,
        'waterConsumedL': log.water_consumed_l or 0,
        'avgWeightG': log.avg_weight_g or 0,
        'eggProduction': log.egg_production or 0,
        'notes': log.notes,
    }


class FlockAnalyst:
    """Request/response wrapper around a chat-completions client."""

    def __init__(self, client=None, model=DEFAULT_MODEL):
        self.client = client
        self.model = model

    @property
    def configured(self):
        return self.client is not None

    def _complete(self, content):
        """Returns the decoded JSON object, or None when the call or the payload is unusable."""
        try:
            rsp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {'role': 'system', 'content': SYSTEM_PROMPT},
                    {'role': 'user', 'content': content},
                ],
                response_format={'type': 'json_object'},
                temperature=0.2,
            )
            payload = json.loads(rsp.choices[0].message.content or '{}')
        except openai.OpenAIError:
            logger.exception("Model call failed")
            return None
        except ValueError:
            logger.exception("Model returned malformed JSON")
            return None

        if not isinstance(payload, dict):
            logger.warning("Model returned %s instead of an object", type(payload).__name__)
            return None
        return payload

    def analyze_flock_performance(self, flock, logs):
        if not self.configured:
            return make_result(
                "API Key not configured. Please check your environment variables.",
                ["Configure API Key for AI insights."],
            )

        ordered = sorted(logs, key=lambda l: l.day or 0)
        summary = json.dumps({
            'breed': flock.breed,
            'type': flock.bird_type,
            'ageDays': len(ordered),
            'currentCount': flock.current_count,
            'initialCount': flock.initial_count,
            'recentPerformance': [log_to_dict(l) for l in ordered[-RECENT_LOG_COUNT:]],
        })

        prompt = (
            "Analyze the following flock data JSON. "
            "Identify trends in mortality, feed consumption, and weight gain. "
            "Provide 3 specific operational recommendations. "
            "Determine an alert level (LOW, MEDIUM, HIGH) based on risks like "
            "high mortality or poor feed conversion.\n\n"
            f"Data: {summary}"
        )

        payload = self._complete(prompt)
        if payload is None:
            return make_result("Failed to generate analysis due to a technical error.", ["Check internet connection.", "Retry analysis."])
        return make_result(
            payload.get('analysis') or "No analysis generated.",
            payload.get('recommendations'),
            payload.get('alertLevel'),
        )

    def diagnose_bird_health(self, image_b64):
        if not self.configured:
            return make_result("API Key not configured.", ["Configure API Key."])

        clean = _DATA_URL_PREFIX.sub('', image_b64 or '')
        content = [
            {'type': 'image_url', 'image_url': {'url': f"data:image/jpeg;base64,{clean}"}},
            {'type': 'text', 'text': (
                "Analyze this image of a poultry bird. Identify visible signs of illness, "
                "injury, or abnormal conditions (e.g., comb color, eye clarity, feather "
                "condition, posture). Provide a diagnosis of potential issues, 3 immediate "
                "recommendations, and an alert level."
            )},
        ]

        payload = self._complete(content)
        if payload is None:
            return make_result("Visual diagnosis failed due to a technical error.", ["Ensure image is clear.", "Check internet connection."])
        return make_result(
            payload.get('analysis') or "Could not analyze image.",
            payload.get('recommendations'),
            payload.get('alertLevel'),
        )

    def analyze_health_trends(self, records, flocks):
        if not self.configured:
            return make_result("API Key not configured.", ["Configure API Key."])

        names = {f.id: f.name for f in flocks}
        summary = json.dumps({
            'flocks': [{'name': f.name, 'type': f.bird_type, 'currentCount': f.current_count} for f in flocks],
            'records': [{
                'flock': names.get(r.flock_id),
                'date': r.date.isoformat() if hasattr(r.date, 'isoformat') else r.date,
                'type': r.record_type,
                'title': r.title,
                'status': r.status,
                'birdsAffected': r.birds_affected,
            } for r in records[:30]],
        })

        prompt = (
            "Review these poultry health records across flocks. Identify recurring "
            "problems, gaps in the vaccination programme and flocks needing attention. "
            "Provide 3 recommendations and an overall alert level.\n\n"
            f"Data: {summary}"
        )

        payload = self._complete(prompt)
        if payload is None:
            return make_result("Health trend analysis failed due to a technical error.", ["Check internet connection.", "Retry analysis."])
        return make_result(
            payload.get('analysis') or "No analysis generated.",
            payload.get('recommendations'),
            payload.get('alertLevel'),
        )


def build_analyst(api_key=None, model=DEFAULT_MODEL):
    client = OpenAI(api_key=api_key) if api_key else None
    return FlockAnalyst(client=client, model=model)
