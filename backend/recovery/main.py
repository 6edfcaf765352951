from fastapi import FastAPI

from recovery.core.config import settings
from recovery.routers import cases, jobs, webhooks

OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Receive billing-provider events."},
    {"name": "Cases", "description": "Inspect and terminate recovery cases."},
    {"name": "Jobs", "description": "Inspect and replay dead-lettered jobs."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Recovers failed subscription payments: ingests billing webhooks, tracks "
        "recovery cases and drives them through nudges, incentives and reminders."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(cases.router, prefix="/cases", tags=["Cases"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "status": "running",
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
