#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import re

import requests

import mlsync

from typing import Optional, Tuple, List

logger = mlsync.logger

PR_URL_RE = re.compile(r'^https?://[^/]+/([^/]+)/([^/]+)/pull/(\d+)/?$')


def parse_pull_request_url(pr_url: str) -> Tuple[str, str, int]:
    matches = PR_URL_RE.search(pr_url)
    if not matches:
        raise ValueError('Unrecognized PR URL: %s' % pr_url)
    return matches.group(1), matches.group(2), int(matches.group(3))


def get_requests_session(token: Optional[str] = None) -> requests.Session:
    session = requests.session()
    session.headers.update({
        'User-Agent': 'mlsync/%s' % mlsync.__VERSION__,
        'Accept': 'application/vnd.github+json',
    })
    if token:
        session.headers.update({'Authorization': f'Bearer {token}'})
    return session


class GitHubClient:
    """Just enough of the GitHub REST API to mirror mail into pull requests.

    Every transport or HTTP error surfaces as TransientExternalFailure, the
    caller decides what that means for the message at hand.
    """

    def __init__(self, config: dict, session: Optional[requests.Session] = None):
        self.apiurl = config.get('github-api-url', mlsync.DEFAULT_CONFIG['github-api-url']).rstrip('/')
        if session is None:
            session = get_requests_session(config.get('github-token'))
        self.session = session

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = '/'.join((self.apiurl, path.lstrip('/')))
        logger.debug('%s %s', method, url)
        try:
            rsp = self.session.request(method, url, **kwargs)
            rsp.raise_for_status()
        except requests.exceptions.RequestException as ex:
            raise mlsync.TransientExternalFailure('GitHub REST error: %s' % ex) from ex
        return rsp

    @staticmethod
    def _get_pr(pr_url: str) -> Tuple[str, str, int]:
        try:
            return parse_pull_request_url(pr_url)
        except ValueError as ex:
            # Only this one message is affected, not the whole run
            raise mlsync.TransientExternalFailure(str(ex)) from ex

    def post_top_level_comment(self, pr_url: str, text: str) -> int:
        owner, repo, nr = self._get_pr(pr_url)
        rsp = self._request('POST', f'repos/{owner}/{repo}/issues/{nr}/comments', json={'body': text})
        return rsp.json()['id']

    def post_issue_reply(self, pr_url: str, comment_id: int, text: str) -> int:
        """Answer a top-level comment.

        Issue comments cannot be threaded, so the reply is another top-level
        comment that links to the one it answers.
        """
        text = f'In reply to {pr_url}#issuecomment-{comment_id}\n\n{text}'
        return self.post_top_level_comment(pr_url, text)

    def post_threaded_reply(self, pr_url: str, comment_id: int, text: str) -> int:
        owner, repo, nr = self._get_pr(pr_url)
        rsp = self._request('POST', f'repos/{owner}/{repo}/pulls/{nr}/comments/{comment_id}/replies',
                            json={'body': text})
        return rsp.json()['id']

    def post_commit_comment(self, pr_url: str, commit: str, text: str) -> int:
        owner, repo, nr = self._get_pr(pr_url)
        # Review comments have to be attached to a file, use the first one
        rsp = self._request('GET', f'repos/{owner}/{repo}/commits/{commit}')
        files = rsp.json().get('files') or list()
        if not files:
            raise mlsync.TransientExternalFailure('Commit %s does not touch any files' % commit)
        data = {
            'body': text,
            'commit_id': commit,
            'path': files[0]['filename'],
            'subject_type': 'file',
        }
        rsp = self._request('POST', f'repos/{owner}/{repo}/pulls/{nr}/comments', json=data)
        return rsp.json()['id']

    def get_pull_request_commits(self, pr_url: str) -> List[str]:
        owner, repo, nr = self._get_pr(pr_url)
        commits = list()
        page = 1
        while True:
            rsp = self._request('GET', f'repos/{owner}/{repo}/pulls/{nr}/commits',
                                params={'per_page': 100, 'page': page})
            pdata = rsp.json()
            commits += [entry['sha'] for entry in pdata]
            if len(pdata) < 100:
                break
            page += 1
        return commits

    def add_pr_cc(self, pr_url: str, address: str) -> bool:
        owner, repo, nr = self._get_pr(pr_url)
        rsp = self._request('GET', f'repos/{owner}/{repo}/pulls/{nr}')
        body = rsp.json().get('body') or ''
        for line in body.splitlines():
            if not re.search(r'^\s*cc:', line, flags=re.I):
                continue
            if address.lower() in line.lower():
                logger.debug('%s already Cc:ed on %s', address, pr_url)
                return False
        # Descriptions use CRLF when edited in the web UI, stick to that
        if body and not body.endswith('\r\n'):
            body += '\r\n'
        if body and not re.search(r'(^|\n)cc:', body, flags=re.I):
            body += '\r\n'
        body += f'cc: {address}'
        self._request('PATCH', f'repos/{owner}/{repo}/pulls/{nr}', json={'body': body})
        return True
