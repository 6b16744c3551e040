"""
teams — client for the external team settings store.
"""
