"""
菜品与菜单路由
读取对所有登录用户开放，维护操作仅限管理员
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.exceptions import ValidationError
from ...core.security import CurrentUser, get_current_user
from ...models.catalog import FoodCreate, MealType, MenuItemCreate, Weekday
from ...schemas.catalog import (
    AvailabilityRequest, CategoryCreateRequest, UseTemplateRequest, VoucherPriceRequest,
)
from ...services import CatalogService
from ..deps import get_catalog_service

router = APIRouter()


@router.get("/foods/")
def list_foods(
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response(service.list_foods())


@router.post("/foods/")
def create_food(
    req: FoodCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response(service.create_food(req, current_user), "菜品已创建")


@router.get("/foods/categories/")
def list_categories(
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response(service.list_categories())


@router.post("/foods/categories/")
def create_category(
    req: CategoryCreateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response(service.create_category(req.name, current_user), "分类已创建")


@router.get("/foods/{food_id}/")
def get_food(
    food_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response(service.get_food(food_id))


@router.get("/menu/daily/")
def daily_menu(
    menu_date: date = Query(..., alias="date"),
    meal_type: Optional[MealType] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    """每日菜单，附带剩余容量"""
    items = service.list_daily_menu(menu_date, meal_type.value if meal_type else None)
    return create_success_response(items)


@router.post("/menu/daily/")
def create_daily_menu_item(
    req: MenuItemCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    if req.menu_date is None:
        raise ValidationError("每日菜单必须提供 menu_date")
    return create_success_response(service.create_menu_item(req, current_user), "菜单项已创建")


@router.patch("/menu/daily/{menu_item_id}/availability/")
def set_availability(
    menu_item_id: int,
    req: AvailabilityRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response(service.set_availability(menu_item_id, req.is_available, current_user))


@router.get("/menu/template/")
def template_menu(
    weekday: Optional[Weekday] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response(service.list_template_menu(weekday.value if weekday else None))


@router.post("/menu/template/")
def create_template_menu_item(
    req: MenuItemCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    if req.weekday is None:
        raise ValidationError("模板菜单必须提供 weekday")
    return create_success_response(service.create_menu_item(req, current_user), "模板菜单项已创建")


@router.post("/menu/use-template/")
def use_template(
    req: UseTemplateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    created = service.use_template_for_date(req.target_date, current_user)
    return create_success_response(created, f"已生成 {len(created)} 个菜单项")


@router.get("/core/voucher/price/")
def get_voucher_price(
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response({"price": service.get_voucher_price()})


@router.put("/core/voucher/price/")
def set_voucher_price(
    req: VoucherPriceRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: CatalogService = Depends(get_catalog_service),
):
    return create_success_response({"price": service.set_voucher_price(req.price, current_user)})
