from fastapi import APIRouter, Depends

from erasure.api.routes import breakers, dispatch, dlq, health, jobs, ledger, receipts, verification
from erasure.core.security import require_ops_secret

ops = [Depends(require_ops_secret)]

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(dispatch.router, prefix="/dispatch", tags=["dispatch"], dependencies=ops)
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"], dependencies=ops)
api_router.include_router(dlq.router, prefix="/dlq", tags=["dlq"], dependencies=ops)
api_router.include_router(breakers.router, prefix="/breakers", tags=["breakers"], dependencies=ops)
api_router.include_router(verification.router, prefix="/verification", tags=["verification"], dependencies=ops)
api_router.include_router(ledger.router, prefix="/ledger", tags=["ledger"], dependencies=ops)
api_router.include_router(ledger.public_router, prefix="/ledger", tags=["public"])
api_router.include_router(receipts.router, prefix="/receipts", tags=["receipts"], dependencies=ops)
