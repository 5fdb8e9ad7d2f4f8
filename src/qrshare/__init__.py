"""QR Share - QR-code bootstrapped file transfer over the local network"""
__version__ = "1.0.0"
