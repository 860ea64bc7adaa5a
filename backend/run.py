#!/usr/bin/env python3
# backend/run.py
"""
Development API server.

Uses SITE_MODE=local unless told otherwise, so the scheduling client and the
payment gateway fall back to their fakes when no credentials are configured.
"""
import os
from pathlib import Path
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("SITE_MODE", "local")

import uvicorn

if __name__ == "__main__":
    print("Starting Bloom Booking API (SITE_MODE=" + os.environ["SITE_MODE"] + ")")
    print("API Docs: http://localhost:8000/docs")

    uvicorn.run("bloom_booking.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
