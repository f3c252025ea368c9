"""
Net-Rewire tunnel server.
"""
