#!/usr/bin/env python3

# Copyright (C) The keyproof developers
#
# This file is part of keyproof. It is subject to the license terms in the
# LICENSE file found in the top-level directory of this distribution.
#
# No part of keyproof including this file, may be copied, modified, propagated,
# or distributed except according to the terms contained in the LICENSE file.

"__init__ module for the keyproof package."

name = "keyproof"
__version__ = "2024.3.1"
__author__ = "The keyproof developers"
__author_email__ = "devs@keyproof.org"
__copyright__ = "Copyright (C) 2024 The keyproof developers"
__license__ = "MIT License"
