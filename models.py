"""
SQLite persistence for EcoBlocks simulations and reward records.

Append-only design.  No ORM, just raw sqlite3.  The simulation engine
never calls this module directly; rows arrive through the background
writer in worker.py so a slow or failing disk never delays a response.
"""

import sqlite3
import os
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("ECOBLOCKS_DB_PATH", "ecoblocks.db")

REWARD_PENDING = "PENDING"
REWARD_MINTED = "MINTED"


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS simulations (
            id                    TEXT PRIMARY KEY,
            user_id               TEXT NOT NULL DEFAULT 'guest',
            block_id              TEXT,
            intervention_type     TEXT NOT NULL,
            co2_reduced           REAL NOT NULL,
            credits_earned        INTEGER NOT NULL,
            new_aqi               REAL,
            estimated_cost        INTEGER,
            ai_insight            TEXT,
            is_fallback_narrative INTEGER NOT NULL DEFAULT 0,
            raw_history           TEXT,
            weekly_summary        TEXT,
            created_at            TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_simulations_user ON simulations(user_id, created_at);

        CREATE TABLE IF NOT EXISTS user_rewards (
            id             TEXT PRIMARY KEY,
            user_id        TEXT NOT NULL,
            total_credits  INTEGER NOT NULL,
            tx_hash        TEXT,
            status         TEXT NOT NULL,
            created_at     TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_rewards_user ON user_rewards(user_id);
    """)
    conn.commit()
    conn.close()


def _new_id():
    return uuid.uuid4().hex[:12]


def _now():
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Simulations
# ---------------------------------------------------------------------------

def insert_simulation(record: Dict[str, Any]) -> str:
    """Append one simulation record. Returns the row id.

    record is the dict built by simulation.simulation_record().
    """
    sim_id = _new_id()
    conn = _get_db()
    conn.execute(
        """INSERT INTO simulations
           (id, user_id, block_id, intervention_type, co2_reduced,
            credits_earned, new_aqi, estimated_cost, ai_insight,
            is_fallback_narrative, raw_history, weekly_summary, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            sim_id,
            record.get("user_id") or "guest",
            record.get("block_id"),
            record["intervention_type"],
            record["co2_reduced"],
            record["credits_earned"],
            record.get("new_aqi"),
            record.get("estimated_cost"),
            record.get("ai_insight"),
            1 if record.get("is_fallback_narrative") else 0,
            json.dumps(record.get("raw_history") or []),
            json.dumps(record.get("weekly_summary") or {}),
            record.get("created_at") or _now(),
        ),
    )
    conn.commit()
    conn.close()
    return sim_id


def _simulation_row(row) -> Dict[str, Any]:
    data = dict(row)
    data["is_fallback_narrative"] = bool(data["is_fallback_narrative"])
    for key, empty in (("raw_history", []), ("weekly_summary", {})):
        try:
            data[key] = json.loads(data[key]) if data[key] else empty
        except (json.JSONDecodeError, TypeError):
            logger.error("Corrupted %s for simulation %s", key, data.get("id"))
            data[key] = empty
    return data


def get_simulation(sim_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_db()
    row = conn.execute("SELECT * FROM simulations WHERE id = ?", (sim_id,)).fetchone()
    conn.close()
    return _simulation_row(row) if row else None


def list_simulations(user_id: str = "guest", limit: int = 10) -> List[Dict[str, Any]]:
    """Most recent simulations for *user_id*, newest first."""
    conn = _get_db()
    rows = conn.execute(
        """SELECT * FROM simulations WHERE user_id = ?
           ORDER BY created_at DESC LIMIT ?""",
        (user_id, limit),
    ).fetchall()
    conn.close()
    return [_simulation_row(r) for r in rows]


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

def insert_reward(record: Dict[str, Any]) -> str:
    """Append one reward record. Returns the row id.

    status defaults to MINTED when a tx_hash is present, else PENDING.
    """
    reward_id = _new_id()
    tx_hash = record.get("tx_hash")
    status = record.get("status") or (REWARD_MINTED if tx_hash else REWARD_PENDING)
    conn = _get_db()
    conn.execute(
        """INSERT INTO user_rewards
           (id, user_id, total_credits, tx_hash, status, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            reward_id,
            record.get("user_id") or "guest",
            int(record["total_credits"]),
            tx_hash,
            status,
            record.get("created_at") or _now(),
        ),
    )
    conn.commit()
    conn.close()
    return reward_id


def list_rewards(user_id: str) -> List[Dict[str, Any]]:
    conn = _get_db()
    rows = conn.execute(
        "SELECT * FROM user_rewards WHERE user_id = ? ORDER BY created_at DESC",
        (user_id,),
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]
