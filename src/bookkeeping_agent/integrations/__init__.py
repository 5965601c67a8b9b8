"""Adapters for the external accounting systems."""

from .billcom import BillComClient
from .contracts import AdapterError, BillComAdapter, QuickBooksAdapter
from .quickbooks import QuickBooksClient
