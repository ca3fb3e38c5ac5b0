"""
app/mappers package marker.
"""
