#!/usr/bin/env python3
"""Development runner"""
import os
import sys

from rotator.cli import main

if __name__ == '__main__':
    # Use development config for local testing
    os.environ.setdefault('ROTATOR_ENV', 'development')
    sys.exit(main())
