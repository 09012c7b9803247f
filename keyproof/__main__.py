#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

import sys

from keyproof.cli import main

sys.exit(main())
