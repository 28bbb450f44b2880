"""Audit vCenter VMs against DNS and Active Directory for tombstoned machines."""

__version__ = "1.0.0"
