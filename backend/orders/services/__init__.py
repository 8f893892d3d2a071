from .stale_offers import SweepResult, check_stale_offers

__all__ = ["SweepResult", "check_stale_offers"]
