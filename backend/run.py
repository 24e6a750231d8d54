#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.

Uses the in-memory payment gateway unless Razorpay credentials are set, so a
local checkout never reaches the real gateway by accident.
"""
import os
from pathlib import Path
import sys

# Add backend to path
backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("ENVIRONMENT", "development")
if not os.getenv("RAZORPAY_KEY_ID"):
    os.environ.setdefault("USE_FAKE_PAYMENT_GATEWAY", "true")

import uvicorn

if __name__ == "__main__":
    print("🚀 Starting Sahayak bookings development server...")
    print(f"💳 Fake payment gateway: {os.getenv('USE_FAKE_PAYMENT_GATEWAY', 'false')}")
    print("🌐 Access at: http://localhost:8000")
    print("📚 API Docs: http://localhost:8000/docs")

    uvicorn.run("sahayak.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
