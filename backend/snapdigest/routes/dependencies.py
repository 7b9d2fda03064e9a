"""
SnapDigest Backend — Route Dependencies
=========================================

What:  FastAPI dependencies that hand route handlers the runtime and the
       SummaryService.
Why:   Route modules never import a module-level singleton. Whatever runtime
       the app was built with (the lifespan's, or a test's injected one) is
       the one every handler sees, and two apps in one process never share
       state.
How:   The lifespan in main.py (or create_app(runtime=...)) stores the
       CoreRuntime on app.state.runtime. get_runtime() reads it back from
       the request; get_summary_service() narrows it to the orchestrator
       most routes need.
Who:   summarize, telegram and user routes use get_summary_service; admin
       and health need the wider runtime (settings, stats) and use
       get_runtime.

Overriding in tests:
    app.dependency_overrides[get_summary_service] = lambda: fake_service
"""

from fastapi import Depends, Request

from snapdigest.runtime import CoreRuntime
from snapdigest.services.summary_service import SummaryService


def get_runtime(request: Request) -> CoreRuntime:
    return request.app.state.runtime


def get_summary_service(runtime: CoreRuntime = Depends(get_runtime)) -> SummaryService:
    return runtime.summaries
