"""
Third-party identity federation ("login with X") for an application.
"""
