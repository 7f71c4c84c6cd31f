"""
Face Check-In

Biometric check-in service for attendance terminals:
- Quality gate for captured faces
- Two-tier matching (provider group search with linear comparison fallback)
- Append-only audit log of every verification attempt
- Face++ or local DeepFace/FAISS recognition providers
"""

__version__ = "1.0.0"
