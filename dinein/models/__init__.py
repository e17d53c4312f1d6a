from dinein.models.restaurant import Restaurant
from dinein.models.table import Table
from dinein.models.table_session import TableSession, CloseReason
from dinein.models.product import Product
from dinein.models.order import Order, OrderStatus, OrderType
from dinein.models.order_item import OrderItem
from dinein.models.order_status_change import OrderStatusChange, TransitionKind
