"""
Miscellaneous host utilities for the harness.
"""

from .accel import accel_list, kvm_available, list_accel


__all__ = (
    'accel_list',
    'kvm_available',
    'list_accel',
)
