#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
# Parse the "What's cooking" status mails the Git maintainer sends to the
# list, so that each topic branch's status can be relayed to its pull request.
#
import re
import html
import email.utils

import mlsync

from typing import Dict, Optional

logger = mlsync.logger

SUBJECT_RE = re.compile(r"^What's cooking in git\.git ")
# --------------------------------------------------
# [Graduated to 'master']
SECTION_RE = re.compile(r'^-{10,}\n\[([^\]]+)\]\n', flags=re.M)
BRANCH_RE = re.compile(r'\n\* ([a-z][\s\S]+?)\n\n')
BRANCH_HEAD_RE = re.compile(r'([^ ]+).*\n *(\(merged to [^)]+\))?')


def is_whats_cooking(lmsg: mlsync.MailMessage, sender: Optional[str]) -> bool:
    if not sender or not lmsg.fromemail:
        return False
    if not SUBJECT_RE.search(lmsg.subject):
        return False
    return email.utils.parseaddr(sender)[1].lower() == lmsg.fromemail.lower()


def parse_whats_cooking(body: str) -> Dict[str, dict]:
    """Map each topic branch to its section, merge status and description."""
    branches = dict()
    sections = SECTION_RE.split(body)
    # split() interleaves the captured section names with their contents
    for i in range(1, len(sections), 2):
        section = sections[i]
        chunks = BRANCH_RE.split(sections[i + 1])
        for j in range(1, len(chunks), 2):
            matches = BRANCH_HEAD_RE.search(chunks[j])
            if not matches:
                continue
            text = re.sub(r'^ ', '', chunks[j + 1], flags=re.M).rstrip()
            branches[matches.group(1)] = {
                'section': section,
                'merged': matches.group(2),
                'text': text,
            }
    return branches


def make_status_comment(branch: str, info: dict, branch_url: str, status_url: str, listname: str) -> str:
    branch_link = f'[`{branch}`]({branch_url}{branch})'
    pre = html.escape(info['text'], quote=False)
    if not pre.strip():
        return (f'The branch {branch_link} was mentioned in the "{info["section"]}" section of the '
                f'[status updates]({status_url}) on the {listname} mailing list.')
    return (f'There was a [status update]({status_url}) in the "{info["section"]}" section about the '
            f'branch {branch_link} on the {listname} mailing list:\n\n<pre>\n{pre}\n</pre>')
