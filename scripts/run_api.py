"""
Serve the observability API.

With SCHEDULER_ENABLED the API process also runs the worker cycle,
reaper and digest sweeps; set it to false when dedicated
scripts/run_worker.py processes do the work.
"""

import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

import uvicorn
from core.config import settings


if __name__ == "__main__":
    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,
        reload=settings.ENVIRONMENT == "development"
    )
