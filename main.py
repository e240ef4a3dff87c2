#!/usr/bin/env python3
"""
FaceCheck - Main Entry Point

Run this file to start the membership scanner.
"""

import sys

from facecheck.main import main

if __name__ == '__main__':
    sys.exit(main())
