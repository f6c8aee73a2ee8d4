from .renderer import ReceiptEmitter, TextReceiptEmitter, receipt_number

__all__ = ["ReceiptEmitter", "TextReceiptEmitter", "receipt_number"]
