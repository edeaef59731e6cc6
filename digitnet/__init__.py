"""
digitnet package
~~~~~~~~~~~~~~~~

Feed-forward neural network engine for handwritten digit recognition.
Contains the dense layer and network implementation with RPROP training,
the MNIST dataset reader, model persistence, the training CLI and the
API server.
"""

__version__ = "1.0.0"
