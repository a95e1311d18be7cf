"""
PearID API Routes Package
Provides verification intake, history and mint operator endpoints.
"""

from pearid.routes import verification, history, mints

__all__ = ['verification', 'history', 'mints']
