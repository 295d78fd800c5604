from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session
from strawberry.types import Info

from ..auth import ViewerContext, get_viewer_context
from ..database import get_db


async def get_context(
    db: Session = Depends(get_db),
    viewer_context: Optional[ViewerContext] = Depends(get_viewer_context),
) -> dict:
    return {"db": db, "viewer_context": viewer_context}


def context_db(info: Info) -> Session:
    return info.context["db"]


def context_viewer(info: Info) -> Optional[ViewerContext]:
    return info.context["viewer_context"]
