"""Paygate - payment gateway integration core."""
