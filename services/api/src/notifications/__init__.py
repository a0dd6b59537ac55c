from .gateway import NotificationGateway, mask_bidder

__all__ = ["NotificationGateway", "mask_bidder"]
