"""
Hub Firewall Module

Loads generated nftables rulesets into the kernel.
"""

from .nftables import NftablesApplier, RuleApplier

__all__ = ["NftablesApplier", "RuleApplier"]
