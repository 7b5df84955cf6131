# Import all models here so Base.metadata knows every table
from pixlmint.domains.mint.models import MintRecord

__all__ = ["MintRecord"]
