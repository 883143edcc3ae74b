from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text

from laundry.deps import Services, get_services

router = APIRouter()


@router.get("")
def health():
    return {"ok": True}


@router.get("/db")
async def health_db(services: Services = Depends(get_services)):
    if services.db_engine is None:
        return {"ok": True, "db": "memory"}
    try:
        async with services.db_engine.connect() as conn:
            result = await conn.execute(text("select 1"))
            result.scalar_one()
        return {"ok": True, "db": "up"}
    except Exception as e:
        # surface the error so we know exactly what's wrong
        raise HTTPException(status_code=503, detail=f"DB check failed: {e}")
