"""Power-on proxy: wakes a sleeping compute instance and forwards traffic to it."""

__version__ = "1.0.0"
