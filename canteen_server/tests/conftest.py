"""
测试配置文件
提供测试所需的fixtures：内存数据库、脚本化支付网关、种子用户和菜单
"""

from datetime import date, time
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from ..api.deps import get_payment_gateway
from ..app import create_app
from ..core.database import DatabaseManager, get_db
from ..core.security import CurrentUser, security_manager
from ..models.catalog import FoodCreate, MenuItemCreate
from ..models.payment import GatewayConfirmation, GatewayInquiry
from ..models.user import UserCreate, UserRole
from ..services import (
    CatalogService, DeliveryService, PaymentGateway, PaymentService,
    ReservationService, TrustService, UserService,
)

MENU_DATE = date(2030, 1, 7)


class FakeGateway(PaymentGateway):
    """脚本化支付网关：按属性返回结果或抛出预设异常"""

    def __init__(self):
        self.authorize_error: Optional[Exception] = None
        self.confirm_error: Optional[Exception] = None
        self.inquire_error: Optional[Exception] = None
        self.already_verified = False
        self.inquiry = GatewayInquiry(status="IN_BANK")
        self.authorize_calls: List[int] = []
        self.confirm_calls: List[tuple] = []
        self.inquire_calls: List[str] = []
        self.reverse_calls: List[str] = []
        self._seq = 0

    def authorize(self, amount, callback_url, description=""):
        self.authorize_calls.append(amount)
        if self.authorize_error:
            raise self.authorize_error
        self._seq += 1
        return f"A{self._seq:035d}"

    def confirm(self, authority, amount):
        self.confirm_calls.append((authority, amount))
        if self.confirm_error:
            raise self.confirm_error
        return GatewayConfirmation(ref_id=f"REF{authority[-6:]}", already_verified=self.already_verified)

    def inquire(self, authority):
        self.inquire_calls.append(authority)
        if self.inquire_error:
            raise self.inquire_error
        return self.inquiry

    def reverse(self, authority):
        self.reverse_calls.append(authority)

    def start_url(self, authority):
        return f"https://gateway.test/StartPay/{authority}"


@pytest.fixture
def test_db():
    """内存数据库"""
    db = DatabaseManager(":memory:")
    yield db
    db.close()


@pytest.fixture
def gateway():
    return FakeGateway()


def _register(db, username, role, full_name=None) -> CurrentUser:
    user = UserService(db).register_user(UserCreate(username=username, full_name=full_name or username, role=role))
    return CurrentUser(id=user.id, role=role)


@pytest.fixture
def admin(test_db):
    return _register(test_db, "admin", UserRole.ADMIN, "管理员")


@pytest.fixture
def chef(test_db):
    return _register(test_db, "chef", UserRole.CHEF, "厨师")


@pytest.fixture
def receiver(test_db):
    return _register(test_db, "receiver", UserRole.RECEIVER, "取餐窗口")


@pytest.fixture
def student(test_db):
    return _register(test_db, "s1001", UserRole.STUDENT, "张三")


@pytest.fixture
def other_student(test_db):
    return _register(test_db, "s1002", UserRole.STUDENT, "李四")


@pytest.fixture
def make_students(test_db):
    """批量创建学生"""
    def factory(count: int) -> List[CurrentUser]:
        return [_register(test_db, f"batch{i}", UserRole.STUDENT) for i in range(count)]
    return factory


@pytest.fixture
def catalog_service(test_db):
    return CatalogService(test_db)


@pytest.fixture
def reservation_service(test_db):
    return ReservationService(test_db)


@pytest.fixture
def payment_service(test_db, gateway):
    return PaymentService(test_db, gateway)


@pytest.fixture
def delivery_service(test_db):
    return DeliveryService(test_db)


@pytest.fixture
def trust_service(test_db):
    return TrustService(test_db)


@pytest.fixture
def food(catalog_service, admin):
    return catalog_service.create_food(FoodCreate(name="Kabab", price=120000), admin)


@pytest.fixture
def make_menu_item(catalog_service, food, admin):
    """创建每日菜单项，容量可调"""
    def factory(time_slot_count=2, time_slot_capacity=10, daily_capacity=20,
                meal_type="lunch", menu_date=MENU_DATE, food_id=None):
        return catalog_service.create_menu_item(MenuItemCreate(
            food_id=food_id or food.id,
            menu_date=menu_date,
            meal_type=meal_type,
            start_time=time(12, 0),
            end_time=time(14, 0),
            time_slot_count=time_slot_count,
            time_slot_capacity=time_slot_capacity,
            daily_capacity=daily_capacity,
        ), admin)
    return factory


@pytest.fixture
def menu_item(make_menu_item):
    return make_menu_item()


@pytest.fixture
def place(reservation_service, menu_item):
    """以默认菜单项下单"""
    def do_place(user, slot_index=0, has_voucher=False, item=None):
        item = item or menu_item
        return reservation_service.place_order(
            student_id=user.id,
            menu_item_id=item.id,
            time_slot_id=item.time_slots[slot_index].id,
            meal_type=item.meal_type,
            reserved_date=item.menu_date,
            has_voucher=has_voucher,
        )
    return do_place


@pytest.fixture
def pay(payment_service):
    """发起支付并完成回调确认"""
    def do_pay(user, reservation):
        started = payment_service.request_payment(reservation.id, user.id, reservation.price,
                                                  "https://canteen.test/callback")
        payment_service.verify_payment(started["authority"], "OK")
        return started
    return do_pay


@pytest.fixture
def ready_reservation(place, pay, reservation_service, student, chef):
    """已支付并备餐完成、等待取餐的预订"""
    reservation = place(student)
    pay(student, reservation)
    reservation_service.update_status(reservation.id, "preparing", chef)
    return reservation_service.update_status(reservation.id, "ready_to_pickup", chef)


@pytest.fixture
def client(test_db, gateway):
    """API测试客户端，数据库和网关替换为测试实例"""
    app = create_app()
    app.dependency_overrides[get_db] = lambda: test_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    return TestClient(app)


@pytest.fixture
def auth_headers():
    """为指定用户生成认证头"""
    def make(user: CurrentUser):
        token = security_manager.create_jwt_token(user.id, UserRole(user.role).value)
        return {"Authorization": f"Bearer {token}"}
    return make


def counters(db, menu_item_id, time_slot_id, reserved_date=MENU_DATE):
    """读取 (时段计数, 当日计数)"""
    slot = db.execute_one(
        "SELECT reserved_count FROM slot_counters WHERE time_slot_id = ? AND reserved_date = ?",
        [time_slot_id, reserved_date],
    )
    day = db.execute_one(
        "SELECT reserved_count FROM day_counters WHERE menu_item_id = ? AND reserved_date = ?",
        [menu_item_id, reserved_date],
    )
    return (slot["reserved_count"] if slot else 0, day["reserved_count"] if day else 0)
