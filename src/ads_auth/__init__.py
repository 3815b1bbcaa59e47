"""
Ads platform OAuth token lifecycle manager (Google Ads, Facebook, Instagram, Meta).
"""
__version__ = "1.0.0"
