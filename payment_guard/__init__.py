"""
Payment security and risk core for the storefront checkout.

Validates customer identity, resolves first-order discounts, scores
transactions for fraud, encrypts and masks sensitive payment data before
persistence, encodes offline Pix payment codes and authenticates
asynchronous payment-provider callbacks.
"""

__version__ = "1.0.0"
