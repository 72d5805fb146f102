"""ssmxfer: file transfer and command execution over the SSM session broker"""

__version__ = "0.1.0"
