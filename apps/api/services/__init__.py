"""
Services package for the clinic booking API
Contains business logic for scheduling, pricing, OTP, payments and token revocation
"""
