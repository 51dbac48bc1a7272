"""iDelivery core: order/parcel lifecycle, fee engine, driver ledgers and notifications."""

__version__ = "1.0.0"
