"""HTTP clients for external service communication."""

from campus_hub_service.clients.mpesa_client import MpesaClient

__all__ = ["MpesaClient"]
