from __future__ import annotations

import pytest

from app.live.analysis import (
    ATTENTION_MESSAGES,
    INITIAL_ANALYSIS,
    THERAPEUTIC_STAGES,
    ConversationAnalysis,
    EmotionalState,
    TherapeuticProgress,
    TherapeuticProgressAnalyzer,
    TherapeuticStage,
)

from conftest import make_messages


def _analysis(*, overall: float = 0.0, flags: tuple[str, ...] = ()) -> ConversationAnalysis:
    return ConversationAnalysis(
        stage=THERAPEUTIC_STAGES[0],
        emotional_state=EmotionalState(),
        progress=TherapeuticProgress(overall=overall),
        needs_attention=flags,
    )


def test_stage_follows_keyword_matches() -> None:
    analyzer = TherapeuticProgressAnalyzer()

    greeting = make_messages(("user", "Hello, it is my first time here, nice to meet you"))
    planning = make_messages(("user", "I want to change my plan and act differently"))

    assert analyzer.stage(greeting).name == "rapport"
    assert analyzer.stage(planning).name == "strategy"
    assert analyzer.stage([]).name == "rapport"


def test_stage_ties_go_to_the_earlier_stage() -> None:
    stages = (
        TherapeuticStage("first", "", ("alpha",), 0.5),
        TherapeuticStage("second", "", ("beta",), 0.5),
    )
    analyzer = TherapeuticProgressAnalyzer(stages=stages)

    assert analyzer.stage(make_messages(("user", "alpha and beta"))).name == "first"


def test_emotional_state_from_recent_user_messages() -> None:
    analyzer = TherapeuticProgressAnalyzer()

    state = analyzer.emotional_state(make_messages(("user", "I am so worried and nervous, I'm afraid")))

    assert state.primary == "anxious"
    assert state.intensity == pytest.approx(0.6)
    assert state.stability == pytest.approx(0.7)


def test_emotional_stability_is_floored() -> None:
    analyzer = TherapeuticProgressAnalyzer()
    messages = make_messages(
        ("user", "worried nervous afraid fear stress"),
        ("user", "ok"),
    )

    state = analyzer.emotional_state(messages)

    assert state.intensity == 1.0
    assert state.stability == pytest.approx(0.1)


def test_emotional_state_without_user_messages_is_neutral() -> None:
    analyzer = TherapeuticProgressAnalyzer()

    state = analyzer.emotional_state(make_messages(("assistant", "I am so sad")))
    calm = analyzer.emotional_state(make_messages(("user", "We talked about the weekend")))

    assert analyzer.emotional_state([]) == EmotionalState()
    assert state == EmotionalState(intensity=0.0)
    assert calm.primary == "neutral" and calm.intensity == 0.0


def test_progress_dimensions_and_overall_mean() -> None:
    analyzer = TherapeuticProgressAnalyzer()
    messages = make_messages(("user", "I realize I think I need to breathe and relax"))

    progress = analyzer.progress(messages, minutes=5)

    assert progress.self_awareness == pytest.approx(0.45)
    assert progress.emotional_regulation == pytest.approx(0.6)
    assert progress.cognitive_insight == pytest.approx(0.03)
    assert progress.behavioral_change == pytest.approx(0.05)
    assert progress.overall == pytest.approx((0.45 + 0.6 + 0.03 + 0.05) / 4)


def test_progress_dimensions_are_capped() -> None:
    messages = make_messages(*[("user", "I realize I think I believe, I feel that")] * 30)

    progress = TherapeuticProgressAnalyzer().progress(messages, minutes=100)

    assert progress.self_awareness == 1.0
    assert progress.emotional_regulation == 1.0
    assert 0 <= progress.overall <= 1


def test_attention_flags_are_limited_to_three() -> None:
    flags = TherapeuticProgressAnalyzer.attention_flags(
        EmotionalState(primary="anxious", intensity=0.9, stability=0.2),
        TherapeuticProgress(overall=0.1),
        minutes=13,
    )

    assert flags == ("high_intensity", "volatility", "stalled")


def test_time_pressure_without_stall() -> None:
    flags = TherapeuticProgressAnalyzer.attention_flags(
        EmotionalState(primary="happy", intensity=0.5, stability=0.7),
        TherapeuticProgress(overall=0.5),
        minutes=13,
    )

    assert flags == ("time_pressure",)


def test_key_insights() -> None:
    messages = make_messages(("user", "I always feel like my family never listens and I want to change"))

    insights = TherapeuticProgressAnalyzer.key_insights(messages)

    assert len(insights) == 4
    assert insights[0] == "Absolute thinking patterns identified"


def test_analyze_keeps_latest_and_handles_empty_history() -> None:
    analyzer = TherapeuticProgressAnalyzer()

    assert analyzer.analyze([], 3) is INITIAL_ANALYSIS

    analysis = analyzer.analyze(make_messages(("user", "I feel nervous and stressed lately")), 3)

    assert analyzer.latest is analysis
    assert analysis.payload()["stage"] == analysis.stage.name
    assert analysis.payload()["emotion"]["primary"] == "anxious"


def test_closing_alert_is_issued_once() -> None:
    analyzer = TherapeuticProgressAnalyzer()

    alert = analyzer.generate_alert(14)

    assert alert is not None
    assert alert.kind == "warning"
    assert alert.window == "closing"
    assert analyzer.generate_alert(14) is None
    assert analyzer.generate_alert(14.5) is None


def test_closing_alert_prefers_attention_flag_then_reflection() -> None:
    flagged = TherapeuticProgressAnalyzer(latest=_analysis(overall=0.9, flags=("anxiety",)))
    reflective = TherapeuticProgressAnalyzer(latest=_analysis(overall=0.9))

    flagged_alert = flagged.generate_alert(14)
    reflective_alert = reflective.generate_alert(14)

    assert flagged_alert is not None and flagged_alert.kind == "question"
    assert ATTENTION_MESSAGES["anxiety"] in flagged_alert.message
    assert reflective_alert is not None and reflective_alert.kind == "reflection"


def test_probe_alert_only_when_progress_is_low() -> None:
    low = TherapeuticProgressAnalyzer(latest=_analysis(overall=0.2))
    high = TherapeuticProgressAnalyzer(latest=_analysis(overall=0.6))

    probe = low.generate_alert(7)

    assert probe is not None and probe.window == "probe"
    assert low.generate_alert(8) is None
    assert high.generate_alert(7) is None
    assert low.generate_alert(6) is None


def test_reset_allows_alerts_again() -> None:
    analyzer = TherapeuticProgressAnalyzer()
    analyzer.generate_alert(14)

    analyzer.reset()

    assert analyzer.generate_alert(14) is not None
