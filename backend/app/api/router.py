from fastapi import APIRouter
from app.modules.billing import api as billing
from app.modules.jobs import api as jobs
from app.modules.platform import api as platform
from app.modules.retention import api as retention
from app.modules.webhooks import api as webhooks

router = APIRouter()
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
router.include_router(billing.router, prefix="/billing", tags=["billing"])
router.include_router(jobs.router, prefix="/platform/jobs", tags=["jobs"])
router.include_router(retention.router, prefix="/platform/data-retention", tags=["data-retention"])
router.include_router(platform.router, prefix="/platform", tags=["platform"])
