import sys

from .dnsping import main

sys.exit(main())
