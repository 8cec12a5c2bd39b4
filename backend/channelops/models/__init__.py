from .channels import Channel, Staff, StaffAssignment, ChannelAttendance, ChannelExpense
from .stock import Product, StockRequest, StockRequestItem, Shipment, ChannelStock, WarehouseStock, StockMovement
from .sales import Sale, SaleItem, SaleAdjustment
from .documents import ReturnSummary, ReturnItem, EventLog, DocumentSequence

__all__ = [
    'Channel', 'Staff', 'StaffAssignment', 'ChannelAttendance', 'ChannelExpense',
    'Product', 'StockRequest', 'StockRequestItem', 'Shipment',
    'ChannelStock', 'WarehouseStock', 'StockMovement',
    'Sale', 'SaleItem', 'SaleAdjustment',
    'ReturnSummary', 'ReturnItem', 'EventLog', 'DocumentSequence',
]
