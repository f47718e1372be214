from typing import Optional

from pydantic import BaseModel


class Pagination(BaseModel):
    page: int
    per_page: int
    total: int
    total_pages: int


def build_pagination(page: int, per_page: int, total: int) -> Pagination:
    total_pages = (total + per_page - 1) // per_page if total else 0
    return Pagination(page=page, per_page=per_page, total=total, total_pages=total_pages)


class MessageResponse(BaseModel):
    message: str
    detail: Optional[str] = None
