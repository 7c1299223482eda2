"""
Procedural object placement over heightmap terrain.
"""
