from disgordian.rest.client import RestClient

__all__ = ["RestClient"]
