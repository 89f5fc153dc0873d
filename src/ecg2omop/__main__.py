import sys

from ecg2omop.cli import main

sys.exit(main())
