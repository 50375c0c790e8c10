"""Transport client capability."""

from wamux.transport.base import TransportClient, EventSink
from wamux.transport.loader import TransportFactory, load_transport_factory

__all__ = ["TransportClient", "EventSink", "TransportFactory", "load_transport_factory"]
