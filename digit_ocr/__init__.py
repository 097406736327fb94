"""
digit_ocr package
~~~~~~~~~~~~~~~~~

Recognise the digits 0-9 rendered in low-resolution fonts.
Contains the feature extractor, the backpropagation network and its
trainer, model persistence, visualisation and the API server.
"""

__version__ = "1.0.0"
