"""
Adaptor lookup by channel category.
"""

from typing import Optional

from channel_core.adaptors.base import ChannelAdaptor
from channel_core.adaptors.booking_com import BookingComAdaptor
from channel_core.adaptors.expedia import ExpediaAdaptor
from channel_core.errors import ValidationError


class AdaptorRegistry:
    """
    Maps a category string to the adaptor instance that speaks its protocol.

    Example:
        >>> registry = AdaptorRegistry.default()
        >>> registry.get("booking.com").category
        'booking.com'
    """

    def __init__(self, adaptors: Optional[list[ChannelAdaptor]] = None):
        self._adaptors: dict[str, ChannelAdaptor] = {}
        for adaptor in adaptors or []:
            self.register(adaptor)

    @classmethod
    def default(cls) -> "AdaptorRegistry":
        return cls([BookingComAdaptor(), ExpediaAdaptor()])

    def register(self, adaptor: ChannelAdaptor) -> None:
        if not adaptor.category:
            raise ValueError("Adaptor has no category")
        self._adaptors[adaptor.category] = adaptor

    def get(self, category: str) -> ChannelAdaptor:
        """
        Raises:
            ValidationError: If no adaptor is registered for the category
        """
        adaptor = self._adaptors.get(category)
        if adaptor is None:
            raise ValidationError(f"No adaptor for channel category '{category}'")
        return adaptor

    def categories(self) -> list[str]:
        return sorted(self._adaptors)
