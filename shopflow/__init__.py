"""Order-processing service: cart, pricing, inventory and payment settlement."""

__version__ = "1.0.0"
