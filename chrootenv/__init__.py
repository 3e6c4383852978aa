"""
chrootenv - enter a Linux chroot environment layered on the host.

Computes a mount plan for a guest root filesystem, applies it idempotently,
launches a login or command inside the guest and tears every mount and
terminal side effect down again on exit.
"""

__version__ = "0.1.0"
