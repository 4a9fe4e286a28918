# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

"""Bare-metal Kubernetes cluster bootstrap orchestrator."""

__version__ = "0.1.0"
