"""
Configuration loading for the vantage point agent.
"""
