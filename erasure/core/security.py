import hmac

from fastapi import Depends, Header, HTTPException, status

from erasure.core.config import Settings, get_settings

OPS_SECRET_HEADER = "X-Ops-Secret"
WORKER_ID_HEADER = "X-Worker-Id"


async def require_ops_secret(
    settings: Settings = Depends(get_settings),
    x_ops_secret: str | None = Header(default=None, alias=OPS_SECRET_HEADER),
) -> None:
    if not settings.ops_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ops secret is not configured",
        )
    if not x_ops_secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"{OPS_SECRET_HEADER} header required")
    if not hmac.compare_digest(x_ops_secret.strip().encode("utf-8"), settings.ops_secret.strip().encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid ops secret")


async def get_worker_id(x_worker_id: str | None = Header(default=None, alias=WORKER_ID_HEADER)) -> str:
    worker_id = (x_worker_id or "").strip()
    if not worker_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{WORKER_ID_HEADER} header required")
    return worker_id
