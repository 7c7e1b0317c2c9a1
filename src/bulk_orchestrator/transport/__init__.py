from bulk_orchestrator.transport.http_app import create_http_app, get_client_ip

__all__ = ["create_http_app", "get_client_ip"]
