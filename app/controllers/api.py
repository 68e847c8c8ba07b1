from fastapi import APIRouter

from . import auth, billing, jobs, uploads

router = APIRouter()
router.include_router(auth.router)
router.include_router(uploads.router)
# /generate, /jobs/{id} and /download/{id}
router.include_router(jobs.router)
# /usage plus checkout, portal and the Stripe webhook
router.include_router(billing.router)
