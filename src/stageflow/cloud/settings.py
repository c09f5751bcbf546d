from __future__ import annotations
import os

DATABASE_URL = os.environ.get("DATABASE_URL")
REDIS_URL = os.environ.get("REDIS_URL")
PIPELINE = os.environ.get("STAGEFLOW_PIPELINE", "stageflow_pipeline.py")
TRIGGER_DEDUP_SECONDS = int(os.environ.get("TRIGGER_DEDUP_SECONDS", "3600"))
DRAIN_INTERVAL = float(os.environ.get("STAGEFLOW_DRAIN_INTERVAL", "0.5"))
