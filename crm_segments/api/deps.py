"""
FastAPI Dependencies

The segment engine, repositories and auto-updater are created once in the
application lifespan and stored on ``app.state``; endpoints receive them
through the annotated aliases below.
"""

from typing import Annotated

from fastapi import Depends, Request

from crm_segments.services.segmentation.engine import SegmentEngine
from crm_segments.services.segmentation.repositories import SqlCustomerRepository, SqlSegmentRepository
from crm_segments.tasks.segment_auto_update import SegmentAutoUpdater


def get_engine(request: Request) -> SegmentEngine:
    return request.app.state.segment_engine


def get_customer_repository(request: Request) -> SqlCustomerRepository:
    return request.app.state.customer_repository


def get_segment_repository(request: Request) -> SqlSegmentRepository:
    return request.app.state.segment_repository


def get_auto_updater(request: Request) -> SegmentAutoUpdater:
    return request.app.state.auto_updater


Engine = Annotated[SegmentEngine, Depends(get_engine)]
Customers = Annotated[SqlCustomerRepository, Depends(get_customer_repository)]
Segments = Annotated[SqlSegmentRepository, Depends(get_segment_repository)]
AutoUpdater = Annotated[SegmentAutoUpdater, Depends(get_auto_updater)]
