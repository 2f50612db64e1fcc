"""Heuristic therapeutic progress scoring for a live conversation.

The analyzer recomputes everything from the full message history on each
call; the only state it keeps between calls is which alert windows have
already been used, so an alert never repeats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .context import KeywordClassifier, Turn


@dataclass(frozen=True)
class TherapeuticStage:
    name: str
    description: str
    keywords: tuple[str, ...]
    progress_weight: float


THERAPEUTIC_STAGES: tuple[TherapeuticStage, ...] = (
    TherapeuticStage(
        name="rapport",
        description="Building trust and connection",
        keywords=("hello", "first time", "new here", "nice to meet", "introduce"),
        progress_weight=0.1,
    ),
    TherapeuticStage(
        name="exploration",
        description="Understanding the current context and situation",
        keywords=("problem", "situation", "going on", "i feel", "lately"),
        progress_weight=0.2,
    ),
    TherapeuticStage(
        name="pattern_recognition",
        description="Recognising thought and behaviour patterns",
        keywords=("always", "never", "pattern", "keeps happening", "again and again"),
        progress_weight=0.3,
    ),
    TherapeuticStage(
        name="insight",
        description="Developing self-knowledge and perspective",
        keywords=("i understand", "i realize", "i see now", "perspective", "connect"),
        progress_weight=0.5,
    ),
    TherapeuticStage(
        name="strategy",
        description="Building tools and planning change",
        keywords=("change", "strategy", "plan", "action", "differently"),
        progress_weight=0.8,
    ),
    TherapeuticStage(
        name="consolidation",
        description="Integrating what was learned and preparing follow-up",
        keywords=("learned", "better", "next time", "keep going", "apply"),
        progress_weight=1.0,
    ),
)

EMOTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "anxious": ("anxi", "worr", "nervous", "stress", "afraid", "fear"),
    "sad": ("sad", "depress", "cry", "hurt", "grief"),
    "angry": ("angry", "annoyed", "furious", "rage", "frustrat"),
    "happy": ("happy", "glad", "joy", "good", "better"),
    "confused": ("confus", "lost", "don't know", "don't understand"),
    "hopeful": ("hope", "optimis", "positive", "improv"),
}

EMOTION_WEIGHTS: dict[str, float] = {emotion: 1.0 for emotion in EMOTION_KEYWORDS}

PROGRESS_KEYWORDS: dict[str, tuple[str, ...]] = {
    "self_awareness": ("i realize", "i understand that", "i think", "i feel that", "i believe"),
    "emotional_regulation": ("calm down", "control", "breathe", "relax", "manage"),
    "cognitive_insight": ("connection", "pattern", "relationship between", "cause", "consequence", "because"),
    "behavioral_change": ("change", "do differently", "try", "practice", "apply"),
}

INSIGHT_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Absolute thinking patterns identified", ("always", "never")),
    ("Active emotional expression", ("i feel", "feel like", "i am feeling")),
    ("Relevant relational context", ("family", "partner", "friends", "work")),
    ("Motivation for change present", ("change", "improve", "differently")),
)

NEUTRAL_EMOTION = "neutral"
RECENT_WINDOW = 5


@dataclass(frozen=True)
class EmotionalState:
    primary: str = NEUTRAL_EMOTION
    intensity: float = 0.5
    stability: float = 0.7


@dataclass(frozen=True)
class TherapeuticProgress:
    overall: float = 0.0
    self_awareness: float = 0.0
    emotional_regulation: float = 0.0
    cognitive_insight: float = 0.0
    behavioral_change: float = 0.0


ATTENTION_MESSAGES = {
    "high_intensity": "High emotional intensity - offer containment",
    "volatility": "Emotional fluctuations - explore triggers",
    "stalled": "Limited progress - consider a change of approach",
    "time_pressure": "Limited time - prioritise goals",
    "anxiety": "High anxiety levels - suggest regulation techniques",
}


@dataclass(frozen=True)
class ConversationAnalysis:
    stage: TherapeuticStage
    emotional_state: EmotionalState
    progress: TherapeuticProgress
    key_insights: tuple[str, ...] = ()
    needs_attention: tuple[str, ...] = ()

    def payload(self) -> dict:
        return {
            "stage": self.stage.name,
            "stage_description": self.stage.description,
            "emotion": {
                "primary": self.emotional_state.primary,
                "intensity": round(self.emotional_state.intensity, 3),
                "stability": round(self.emotional_state.stability, 3),
            },
            "progress": {
                "overall": round(self.progress.overall, 3),
                "self_awareness": round(self.progress.self_awareness, 3),
                "emotional_regulation": round(self.progress.emotional_regulation, 3),
                "cognitive_insight": round(self.progress.cognitive_insight, 3),
                "behavioral_change": round(self.progress.behavioral_change, 3),
            },
            "key_insights": list(self.key_insights),
            "needs_attention": [ATTENTION_MESSAGES[flag] for flag in self.needs_attention],
        }


INITIAL_ANALYSIS = ConversationAnalysis(
    stage=THERAPEUTIC_STAGES[0],
    emotional_state=EmotionalState(),
    progress=TherapeuticProgress(),
)


@dataclass(frozen=True)
class SessionAlert:
    kind: str
    message: str
    window: str

    def payload(self) -> dict:
        return {"kind": self.kind, "message": self.message, "window": self.window}


@dataclass
class TherapeuticProgressAnalyzer:
    """Scores conversation maturity and produces time-based prompts."""

    max_duration_minutes: int = 15
    warning_offset_minutes: int = 1
    probe_minute: int = 7
    probe_progress_ceiling: float = 0.4
    stages: Sequence[TherapeuticStage] = THERAPEUTIC_STAGES
    emotion_classifier: KeywordClassifier = field(
        default_factory=lambda: KeywordClassifier(EMOTION_KEYWORDS)
    )
    progress_classifier: KeywordClassifier = field(
        default_factory=lambda: KeywordClassifier(PROGRESS_KEYWORDS)
    )
    emotion_weights: dict[str, float] = field(default_factory=lambda: dict(EMOTION_WEIGHTS))
    latest: ConversationAnalysis = INITIAL_ANALYSIS
    _issued_windows: set[str] = field(default_factory=set)

    def analyze(self, messages: Sequence[Turn], minutes: float) -> ConversationAnalysis:
        if not messages:
            return self.latest
        user_messages = [message for message in messages if message.role == "user"]
        emotional_state = self.emotional_state(messages[-RECENT_WINDOW:])
        progress = self.progress(user_messages, minutes)
        analysis = ConversationAnalysis(
            stage=self.stage(user_messages),
            emotional_state=emotional_state,
            progress=progress,
            key_insights=self.key_insights(user_messages),
            needs_attention=self.attention_flags(emotional_state, progress, minutes),
        )
        self.latest = analysis
        return analysis

    def stage(self, user_messages: Sequence[Turn]) -> TherapeuticStage:
        if not user_messages:
            return self.stages[0]
        content = " ".join(message.content.lower() for message in user_messages)
        length_bonus = min(len(user_messages) / 10, 1.0)

        best_stage = self.stages[0]
        best_score = float("-inf")
        for stage in self.stages:
            matches = sum(1 for keyword in stage.keywords if keyword in content)
            score = matches + length_bonus * stage.progress_weight
            # Strict comparison keeps the earlier stage on ties.
            if score > best_score:
                best_stage, best_score = stage, score
        return best_stage

    def emotional_state(self, recent_messages: Sequence[Turn]) -> EmotionalState:
        """Dominant emotion of the user turns; `neutral` when none is detected."""
        if not recent_messages:
            return EmotionalState()
        user_messages = [message for message in recent_messages if message.role == "user"]
        content = " ".join(message.content for message in user_messages)

        scores = {
            emotion: self.emotion_classifier.occurrences(content, emotion) * self.emotion_weights.get(emotion, 1.0)
            for emotion in self.emotion_classifier.families
        }
        total_matches = sum(
            self.emotion_classifier.occurrences(content, emotion)
            for emotion in self.emotion_classifier.families
        )
        primary = NEUTRAL_EMOTION
        best = 0.0
        for emotion, score in scores.items():
            if score > best:
                primary, best = emotion, score

        intensity = min(total_matches / 5, 1.0)
        if len(user_messages) > 1:
            first = self._emotion_hits(user_messages[0].content)
            last = self._emotion_hits(user_messages[-1].content)
            stability = 1 - abs(first - last) / 5
        else:
            stability = 0.7
        return EmotionalState(primary=primary, intensity=intensity, stability=max(0.1, stability))

    def _emotion_hits(self, text: str) -> int:
        return sum(
            self.emotion_classifier.occurrences(text, emotion)
            for emotion in self.emotion_classifier.families
        )

    def progress(self, user_messages: Sequence[Turn], minutes: float) -> TherapeuticProgress:
        content = " ".join(message.content for message in user_messages)
        count = len(user_messages)
        hits = self.progress_classifier.keyword_hits

        self_awareness = min(hits(content, "self_awareness") * 0.2 + count * 0.05, 1.0)
        emotional_regulation = min(hits(content, "emotional_regulation") * 0.25 + minutes * 0.02, 1.0)
        cognitive_insight = min(hits(content, "cognitive_insight") * 0.2 + count * 0.03, 1.0)
        behavioral_change = min(hits(content, "behavioral_change") * 0.3 + minutes * 0.01, 1.0)
        overall = (self_awareness + emotional_regulation + cognitive_insight + behavioral_change) / 4
        return TherapeuticProgress(
            overall=overall,
            self_awareness=self_awareness,
            emotional_regulation=emotional_regulation,
            cognitive_insight=cognitive_insight,
            behavioral_change=behavioral_change,
        )

    @staticmethod
    def key_insights(user_messages: Sequence[Turn]) -> tuple[str, ...]:
        content = " ".join(message.content.lower() for message in user_messages)
        return tuple(
            insight
            for insight, keywords in INSIGHT_RULES
            if any(keyword in content for keyword in keywords)
        )[:4]

    @staticmethod
    def attention_flags(
        emotional_state: EmotionalState,
        progress: TherapeuticProgress,
        minutes: float,
    ) -> tuple[str, ...]:
        flags: list[str] = []
        if emotional_state.intensity > 0.8:
            flags.append("high_intensity")
        if emotional_state.stability < 0.3:
            flags.append("volatility")
        if minutes > 10 and progress.overall < 0.3:
            flags.append("stalled")
        if minutes > 12 and progress.overall < 0.6:
            flags.append("time_pressure")
        if emotional_state.primary == "anxious" and emotional_state.intensity > 0.6:
            flags.append("anxiety")
        return tuple(flags[:3])

    @property
    def closing_minute(self) -> int:
        return self.max_duration_minutes - max(self.warning_offset_minutes, 1)

    def generate_alert(self, minutes: float) -> SessionAlert | None:
        """Return the alert for the current time window, at most once per window."""
        analysis = self.latest
        if minutes >= self.closing_minute:
            window = "closing"
            if window in self._issued_windows:
                return None
            if analysis.needs_attention:
                flag = ATTENTION_MESSAGES[analysis.needs_attention[0]]
                alert = SessionAlert(
                    kind="question",
                    message=f"We are almost out of time. {flag}. Would you like to explore this a little further?",
                    window=window,
                )
            elif analysis.progress.overall > 0.7:
                alert = SessionAlert(
                    kind="reflection",
                    message="We did great work today. What is the most important thing you take away from this conversation?",
                    window=window,
                )
            else:
                alert = SessionAlert(
                    kind="warning",
                    message="We have one minute left to wrap up. Is there anything specific you would like to focus on?",
                    window=window,
                )
            self._issued_windows.add(window)
            return alert

        if (
            self.probe_minute <= minutes <= self.probe_minute + 1
            and analysis.progress.overall < self.probe_progress_ceiling
        ):
            window = "probe"
            if window in self._issued_windows:
                return None
            self._issued_windows.add(window)
            return SessionAlert(
                kind="question",
                message="We are exploring important topics. What do you feel you need to understand better?",
                window=window,
            )
        return None

    def reset(self) -> None:
        self.latest = INITIAL_ANALYSIS
        self._issued_windows.clear()
