# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Command line pipelines for simulating data and fitting JSDMs."""
