"""Client-side data access and order lifecycle for the Pikup apps."""

__version__ = "0.4.0"
