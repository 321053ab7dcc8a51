"""
authcore - Authentication & Authorization Core

Identity and access control for the business-operations platform:
- Adaptive login (password + IP trust ledger + OTP challenge)
- Refresh-token rotation with reuse detection
- Role/module/action permission resolution with custom roles
"""

__version__ = "0.1.0"
