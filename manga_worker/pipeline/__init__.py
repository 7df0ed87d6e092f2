"""
Archive processing stages: reading, classification, inspection,
thumbnail generation and metadata extraction.
"""
