from __future__ import annotations

from chart_confluence_bot.aggregator import TimeframeAggregator
from chart_confluence_bot.config import SignalSettings
from chart_confluence_bot.decision import decide
from chart_confluence_bot.extractor import build_analysis
from chart_confluence_bot.models import Timeframe


SAMPLE_TEXTS = {
    Timeframe.H4: "Overall uptrend with higher highs.\nBullish BOS confirmed at 1.0950\nLiquidity resting below 1.0820",
    Timeframe.M15: "Bullish CHOCH at 1.0905 after the sweep",
    Timeframe.M3: "Bullish order block (demand) at 1.0890 - 1.0895",
    Timeframe.M1: "Bullish BOS on the 1m at 1.0898, entry trigger",
}


def run_case(name: str, texts, settings: SignalSettings) -> None:
    agg = TimeframeAggregator(name)
    for tf, text in texts.items():
        agg.add(build_analysis(text, tf))
    decision = decide(agg.to_bundle(), settings)
    sig = decision.signal
    if sig is None:
        print(f"{name}: no signal ({decision.reason})")
        return
    print(
        f"{name}: {sig.signal_type.value} entry={sig.entry_price:g} sl={sig.stop_loss:g} "
        f"tp={sig.take_profit:g} rr={sig.risk_reward_ratio:g} conf={sig.confidence_score:.2f}"
    )


def main():
    run_case("default_settings", SAMPLE_TEXTS, SignalSettings())
    run_case("strict_threshold", SAMPLE_TEXTS, SignalSettings(min_confidence_threshold=0.80))
    run_case("rr_3", SAMPLE_TEXTS, SignalSettings(risk_reward_ratio=3.0))

    neutral = dict(SAMPLE_TEXTS)
    neutral[Timeframe.H4] = "Ranging market, no clear structure."
    run_case("neutral_4h", neutral, SignalSettings())


if __name__ == "__main__":
    main()
