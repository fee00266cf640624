"""
FLOW-PRESSURE v1.0 - Signal learning loop (aiLearning).

Scores resolved AIBacktestLog signals, derives a status and threshold
adjustments, and appends an AILearningLog record.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config import get_logger
from entity_store import EntityStore, log_error, utc_now_iso
from functions import register

logger = get_logger(__name__)

ALGORITHM_VERSION = "FlowPressure-Learning-v1.0"
STATUS_INITIALIZING = "初始化"
STATUS_LEARNING = "學習中"
STATUS_STABLE = "穩定"
STATUS_RECALIBRATING = "重新校正中"

Record = Dict[str, Any]


@dataclass
class LearningStats:
    total_signals_analyzed: int
    win_rate_overall: float
    win_rate_intensity_1: float
    win_rate_intensity_2: float
    win_rate_intensity_3: float
    win_rate_intensity_4: float
    win_rate_intensity_5: float
    win_rate_high_conf: float
    win_rate_medium_conf: float
    win_rate_low_conf: float


@dataclass
class UpdatedWeights:
    volume_multiplier: int = 4
    trade_size_multiplier: int = 8
    intensity_threshold: int = 4
    cont_prob_threshold: int = 70
    adjustments: List[str] = field(default_factory=list)


def win_rate(logs: List[Record], predicate: Optional[Callable[[Record], bool]] = None) -> float:
    """Percent WIN among resolved (non-PENDING) logs matching ``predicate``."""
    selected = [b for b in logs if predicate is None or predicate(b)]
    resolved = [b for b in selected if b.get("result_outcome") != "PENDING"]
    if not resolved:
        return 0.0
    wins = sum(1 for b in resolved if b.get("result_outcome") == "WIN")
    return wins / len(resolved) * 100.0


def _cont_prob(log: Record) -> float:
    return float(log.get("cont_prob") or 0.0)


def compute_stats(logs: List[Record]) -> LearningStats:
    by_intensity = {
        level: win_rate(logs, lambda b, level=level: b.get("intensity_score") == level) for level in range(1, 6)
    }
    return LearningStats(
        total_signals_analyzed=len(logs),
        win_rate_overall=win_rate(logs),
        win_rate_intensity_1=by_intensity[1],
        win_rate_intensity_2=by_intensity[2],
        win_rate_intensity_3=by_intensity[3],
        win_rate_intensity_4=by_intensity[4],
        win_rate_intensity_5=by_intensity[5],
        win_rate_high_conf=win_rate(logs, lambda b: _cont_prob(b) >= 70),
        win_rate_medium_conf=win_rate(logs, lambda b: 50 <= _cont_prob(b) < 70),
        win_rate_low_conf=win_rate(logs, lambda b: _cont_prob(b) < 50),
    )


def determine_status(overall: float, total_signals: int) -> str:
    if total_signals < 20:
        return STATUS_INITIALIZING
    if total_signals < 100:
        return STATUS_LEARNING
    if overall < 55:
        return STATUS_RECALIBRATING
    return STATUS_STABLE


def updated_weights(stats: LearningStats) -> UpdatedWeights:
    weights = UpdatedWeights()
    if stats.win_rate_overall < 55:
        weights.intensity_threshold = 5
        weights.adjustments.append("提高 intensity_threshold 至 5")
    if stats.win_rate_high_conf < 60:
        weights.cont_prob_threshold = 75
        weights.adjustments.append("提高 cont_prob_threshold 至 75")
    if stats.win_rate_intensity_4 < 55:
        weights.volume_multiplier = 5
        weights.adjustments.append("提高 volume_multiplier 至 5")
    return weights


def performance_notes(stats: LearningStats, logs: List[Record]) -> str:
    notes: List[str] = []

    overall = stats.win_rate_overall
    if overall >= 70:
        notes.append("✅ 總體勝率優秀 (≥70%)")
    elif overall >= 60:
        notes.append("✓ 總體勝率達標 (60-70%)")
    elif overall >= 50:
        notes.append("⚠️ 總體勝率偏低 (50-60%)，需要優化")
    else:
        notes.append("❌ 總體勝率不佳 (<50%)，建議重新校正")

    if stats.win_rate_intensity_5 > stats.win_rate_intensity_4:
        notes.append("💡 強度5表現優於強度4，演算法合理")
    else:
        notes.append("⚠️ 強度評分可能需要調整")

    if stats.win_rate_high_conf >= 70:
        notes.append("🎯 高信心訊號表現優異")
    elif stats.win_rate_high_conf < 60:
        notes.append("⚠️ 高信心訊號未達預期，需檢視 cont_prob 計算")

    resolved = sum(1 for b in logs if b.get("result_outcome") != "PENDING")
    if resolved < 50:
        notes.append(f"📊 樣本數：{resolved}，建議累積更多數據")
    else:
        notes.append(f"📊 樣本數：{resolved}，數據充足")

    return " | ".join(notes)


def run_learning(store: EntityStore, limit: int = 100) -> Dict[str, Any]:
    """Analyze the ``limit`` most recent AIBacktestLog records."""
    logs = store.list("AIBacktestLog", sort="-entry_timestamp", limit=limit)
    if not logs:
        return {"success": False, "message": "尚無回測數據"}

    stats = compute_stats(logs)
    status = determine_status(stats.win_rate_overall, stats.total_signals_analyzed)
    weights = updated_weights(stats)
    notes = performance_notes(stats, logs)

    record = {
        "timestamp": utc_now_iso(),
        **asdict(stats),
        "ai_status": status,
        "updated_weights": json.dumps(asdict(weights), ensure_ascii=False),
        "performance_notes": notes,
        "algorithm_version": ALGORITHM_VERSION,
    }
    store.create("AILearningLog", record)

    logger.info(
        "Learning completed: %d signals, %.1f%% win rate, status %s",
        stats.total_signals_analyzed,
        stats.win_rate_overall,
        status,
    )
    log_error(
        store,
        "SYSTEM",
        f"AI Learning completed: {stats.total_signals_analyzed} signals analyzed, "
        f"{stats.win_rate_overall:.1f}% win rate",
        "LOW",
        {"win_rate": stats.win_rate_overall, "ai_status": status},
    )
    return {
        "success": True,
        "learning": record,
        "stats": {**asdict(stats), "ai_status": status, "performance_notes": notes},
        "recommendations": weights.adjustments,
    }


@register("aiLearning")
def ai_learning(payload: Dict[str, Any], store: EntityStore) -> Dict[str, Any]:
    return run_learning(store, limit=int(payload.get("limit") or 100))
