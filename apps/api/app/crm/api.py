from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import domain_error_response
from app.core.auth import AuthUser
from app.core.database import get_db
from app.core.rbac import ADMIN_ROLES, READ_ROLES, WRITE_ROLES, require_roles
from app.crm.errors import ReferenceNotFoundError
from app.crm.schemas import (
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    OfferCreate,
    OfferRead,
    OfferUpdate,
    StatusChangeRequest,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from app.crm.service import CRMServices


customers_router = APIRouter(prefix="/api/customers", tags=["crm.customers"])
offers_router = APIRouter(prefix="/api/offers", tags=["crm.offers"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])

can_read = require_roles(*READ_ROLES)
can_write = require_roles(*WRITE_ROLES)
can_delete = require_roles(*ADMIN_ROLES)


def get_crm_services(request: Request) -> CRMServices:
    return request.app.state.crm_services


def _missing_parent(request: Request, exc: ReferenceNotFoundError) -> JSONResponse:
    # A parent named in the path is the resource being addressed, so it is a 404.
    return domain_error_response(request, exc, status_code=status.HTTP_404_NOT_FOUND)


# Customers


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    dto: CustomerCreate,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> CustomerRead:
    return crm.customers.create(db, dto)


@customers_router.get("", response_model=list[CustomerRead])
def list_customers(
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[CustomerRead]:
    return crm.customers.get_all(db)


@customers_router.get("/{customer_id}", response_model=CustomerRead)
def get_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> CustomerRead:
    return crm.customers.get_by_id(db, customer_id)


@customers_router.put("/{customer_id}", response_model=CustomerRead)
def update_customer(
    customer_id: int,
    dto: CustomerUpdate,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> CustomerRead:
    return crm.customers.update(db, customer_id, dto)


@customers_router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_delete),
) -> None:
    crm.customers.delete(db, customer_id)


# Offers


@offers_router.post("", response_model=OfferRead, status_code=status.HTTP_201_CREATED)
def create_offer(
    dto: OfferCreate,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> OfferRead:
    return crm.offers.create(db, dto)


@offers_router.get("", response_model=list[OfferRead])
def list_offers(
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[OfferRead]:
    return crm.offers.get_all(db)


@offers_router.get("/customer/{customer_id}", response_model=list[OfferRead])
def list_offers_for_customer(
    request: Request,
    customer_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[OfferRead] | JSONResponse:
    try:
        return crm.offers.get_by_parent(db, customer_id)
    except ReferenceNotFoundError as exc:
        return _missing_parent(request, exc)


@offers_router.get("/{offer_id}", response_model=OfferRead)
def get_offer(
    offer_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> OfferRead:
    return crm.offers.get_by_id(db, offer_id)


@offers_router.put("/{offer_id}", response_model=OfferRead)
def update_offer(
    offer_id: int,
    dto: OfferUpdate,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> OfferRead:
    return crm.offers.update(db, offer_id, dto)


@offers_router.patch("/{offer_id}/status", response_model=OfferRead)
def change_offer_status(
    offer_id: int,
    payload: StatusChangeRequest,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> OfferRead:
    return crm.offers.change_status(db, offer_id, payload.status)


@offers_router.delete("/{offer_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_offer(
    offer_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_delete),
) -> None:
    crm.offers.delete(db, offer_id)


# Tasks


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    dto: TaskCreate,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> TaskRead:
    return crm.tasks.create(db, dto)


@tasks_router.get("", response_model=list[TaskRead])
def list_tasks(
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[TaskRead]:
    return crm.tasks.get_all(db)


@tasks_router.get("/overdue", response_model=list[TaskRead])
def list_overdue_tasks(
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[TaskRead]:
    return crm.tasks.get_overdue(db)


@tasks_router.get("/customer/{customer_id}", response_model=list[TaskRead])
def list_tasks_for_customer(
    request: Request,
    customer_id: int,
    task_status: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[TaskRead] | JSONResponse:
    try:
        if task_status is not None:
            return crm.tasks.get_by_customer_and_status(db, customer_id, task_status)
        return crm.tasks.get_by_parent(db, customer_id)
    except ReferenceNotFoundError as exc:
        return _missing_parent(request, exc)


@tasks_router.get("/offer/{offer_id}", response_model=list[TaskRead])
def list_tasks_for_offer(
    request: Request,
    offer_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[TaskRead] | JSONResponse:
    try:
        return crm.tasks.get_by_offer(db, offer_id)
    except ReferenceNotFoundError as exc:
        return _missing_parent(request, exc)


@tasks_router.get("/status/{task_status}", response_model=list[TaskRead])
def list_tasks_by_status(
    task_status: str,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> list[TaskRead]:
    return crm.tasks.get_by_status(db, task_status)


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    task_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_read),
) -> TaskRead:
    return crm.tasks.get_by_id(db, task_id)


@tasks_router.put("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: int,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> TaskRead:
    return crm.tasks.update(db, task_id, dto)


@tasks_router.patch("/{task_id}/status", response_model=TaskRead)
def change_task_status(
    task_id: int,
    payload: StatusChangeRequest,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_write),
) -> TaskRead:
    return crm.tasks.change_status(db, task_id, payload.status)


@tasks_router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_task(
    task_id: int,
    db: Session = Depends(get_db),
    crm: CRMServices = Depends(get_crm_services),
    _: AuthUser = Depends(can_delete),
) -> None:
    crm.tasks.delete(db, task_id)
