"""planpay: plan purchases over card, crypto-exchange and on-chain payments."""

__version__ = "0.1.0"
