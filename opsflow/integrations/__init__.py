"""Domain operations reached by action nodes."""

from .operations import DomainOperations, HttpDomainOperations, OperationContext

__all__ = ["DomainOperations", "HttpDomainOperations", "OperationContext"]
