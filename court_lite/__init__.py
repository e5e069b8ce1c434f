"""
Case Court Service - AI-adjudicated two-party disputes
======================================================

A small service for:
1. Walking a dispute case from filing through cross-examination and debate
2. Asking an AI judge for dispute points and a final verdict
3. Keeping two participants' views of a case in sync through a shared store
"""

__version__ = "1.0.0"
