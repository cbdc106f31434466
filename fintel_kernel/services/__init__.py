"""Kernel service infrastructure."""

from fintel_kernel.services.base import BaseService

__all__ = ["BaseService"]
