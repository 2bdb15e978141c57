#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import mlsync
import mlsync.notes
import mlsync.cooking

from typing import Optional, Callable, Dict, Iterator, Set, Tuple

logger = mlsync.logger

FENCE = '``````````'


class MailArchiveMirror:
    """Mirror new mail from a public-inbox style git archive into pull requests.

    Messages are handled strictly in archive order, one at a time, since a
    reply can only be routed once the metadata of the message it replies to
    has been written.  The checkpoint only moves once the whole range has been
    walked.
    """

    def __init__(self, config: dict, notes: mlsync.notes.GitNotes, archive_gitdir: str, client,
                 state: Optional[dict] = None, branch: Optional[str] = None):
        self.config = config
        self.notes = notes
        self.archive_gitdir = archive_gitdir
        self.client = client
        if state is None:
            state = dict()
        self.state = state
        if branch is None:
            branch = state.get('branch') or config.get('archive-branch', 'master')
        self.branch = branch

    @classmethod
    def from_notes(cls, config: dict, notes: mlsync.notes.GitNotes, archive_gitdir: str, client,
                   branch: Optional[str] = None) -> 'MailArchiveMirror':
        state = notes.get(config['state-key'])
        if state is None:
            state = dict()
        return cls(config, notes, archive_gitdir, client, state=state, branch=branch)

    @staticmethod
    def mbox_to_markdown(lmsg: mlsync.MailMessage) -> str:
        body = lmsg.body
        if not len(body):
            return ''
        if not body.endswith('\n'):
            body += '\n'
        return f'{FENCE}email\n{body}{FENCE}\n'

    def make_comment(self, lmsg: mlsync.MailMessage, outdated_commit: Optional[str] = None) -> str:
        archive_url = '%s%s' % (self.config['mailrepo-url'], lmsg.msgid)
        fromname = lmsg.fromname if lmsg.fromname else 'Somebody'
        header = (f"[On the {self.config['mailrepo-name']} mailing list]({archive_url}), {fromname} wrote "
                  f"([reply to this]({self.config['reply-to-this-url']})):\n\n")
        if outdated_commit:
            header += (f'> [!NOTE]\n> This is a reply to an outdated version of {outdated_commit}, '
                       'which is no longer part of this pull request.\n\n')
        return header + MailArchiveMirror.mbox_to_markdown(lmsg)

    def get_archive_tip(self) -> str:
        tip = mlsync.git_revparse_obj(self.archive_gitdir, f'{self.branch}^{{commit}}')
        if not tip:
            raise mlsync.FatalEnumerationFailure(f'Could not resolve {self.branch} in {self.archive_gitdir}')
        return tip

    def iter_new_messages(self, since: Optional[str], tip: str) -> Iterator[Tuple[str, bytes]]:
        if since:
            revrange = f'{since}..{tip}'
        else:
            revrange = tip
        ecode, out = mlsync.git_run_command(self.archive_gitdir, ['rev-list', '--reverse', revrange],
                                            logstderr=True)
        if ecode > 0:
            raise mlsync.FatalEnumerationFailure(f'Could not list {revrange}: {out.strip()}')
        for commit in out.split():
            gitargs = ['diff-tree', '-r', '--root', '--no-commit-id', '--diff-filter=AM', '--name-only', commit]
            ecode, paths = mlsync.git_run_command(self.archive_gitdir, gitargs)
            if ecode > 0:
                raise mlsync.FatalEnumerationFailure(f'Could not read commit {commit}')
            for path in paths.splitlines():
                if not path:
                    continue
                ecode, raw = mlsync.git_run_command(self.archive_gitdir, ['cat-file', 'blob', f'{commit}:{path}'],
                                                    decode=False)
                if ecode > 0:
                    raise mlsync.FatalEnumerationFailure(f'Could not read {commit}:{path}')
                yield commit, raw

    def find_reply_target(self, lmsg: mlsync.MailMessage, seen: Set[str],
                          pr_filter: Optional[Callable[[str], bool]] = None) -> Optional[dict]:
        target = None
        for reference in lmsg.references:
            if mlsync.notes.GitNotes.hash_key(reference) not in seen:
                continue
            data = self.notes.get(reference)
            if not data or not data.get('pull_request_url'):
                continue
            if pr_filter and not pr_filter(data['pull_request_url']):
                continue
            # First hit wins, unless a later one knows more: a patch commit
            # beats a cover letter, a mirrored comment beats no comment
            commit = data.get('original_commit')
            comment_id = data.get('issue_comment_id')
            top_id = data.get('top_level_comment_id')
            if (target is None
                    or (not target['original_commit'] and commit)
                    or (not target['issue_comment_id'] and comment_id)
                    or (not target['issue_comment_id'] and not target['top_level_comment_id'] and top_id)):
                target = {
                    'reference': reference,
                    'pull_request_url': data['pull_request_url'],
                    'original_commit': commit,
                    'issue_comment_id': comment_id,
                    'top_level_comment_id': top_id,
                }
        return target

    def mirror_message(self, lmsg: mlsync.MailMessage, target: dict) -> dict:
        pr_url = target['pull_request_url']
        commit = target['original_commit']
        comment_id = target['issue_comment_id']
        top_id = target.get('top_level_comment_id')
        logger.info('Message-ID %s for %s, commit %s, comment ID %s, top-level comment ID %s',
                    lmsg.msgid, pr_url, commit, comment_id, top_id)

        if comment_id:
            # Stays in the review thread of the comment it answers
            self.client.post_threaded_reply(pr_url, comment_id, self.make_comment(lmsg))
        elif top_id:
            top_id = self.client.post_issue_reply(pr_url, top_id, self.make_comment(lmsg))
        elif commit:
            if commit in self.client.get_pull_request_commits(pr_url):
                comment_id = self.client.post_commit_comment(pr_url, commit, self.make_comment(lmsg))
            else:
                logger.info('  %s is no longer part of %s', commit, pr_url)
                text = self.make_comment(lmsg, outdated_commit=commit)
                top_id = self.client.post_top_level_comment(pr_url, text)
        else:
            top_id = self.client.post_top_level_comment(pr_url, self.make_comment(lmsg))

        metadata = {
            'message_id': lmsg.msgid,
            'pull_request_url': pr_url,
            'original_commit': commit,
            'issue_comment_id': comment_id,
            'top_level_comment_id': top_id,
        }
        self.notes.set(lmsg.msgid, metadata)

        if lmsg.sender:
            try:
                self.client.add_pr_cc(pr_url, lmsg.sender)
            except mlsync.TransientExternalFailure as ex:
                logger.info('  Could not add %s to the Cc: list of %s: %s', lmsg.sender, pr_url, ex)

        return metadata

    def get_upstream_branches(self, pr_filter: Optional[Callable[[str], bool]] = None) -> Dict[str, str]:
        branches = dict()
        options = self.notes.get('') or dict()
        for pr_url in (options.get('open_prs') or dict()):
            if pr_filter and not pr_filter(pr_url):
                continue
            prmeta = self.notes.get(pr_url)
            if prmeta and prmeta.get('upstream_branch'):
                branches[prmeta['upstream_branch']] = pr_url
        return branches

    def relay_status_update(self, lmsg: mlsync.MailMessage,
                            pr_filter: Optional[Callable[[str], bool]] = None) -> dict:
        logger.info('Handling "%s"', lmsg.subject)
        status_url = '%s%s' % (self.config['mailrepo-url'], lmsg.msgid)
        upstream = self.get_upstream_branches(pr_filter=pr_filter)
        relayed = list()
        for branch, info in mlsync.cooking.parse_whats_cooking(lmsg.body).items():
            pr_url = upstream.get(branch)
            if not pr_url:
                continue
            text = mlsync.cooking.make_status_comment(branch, info, self.config['upstream-branch-url'],
                                                      status_url, self.config['mailrepo-name'])
            try:
                self.client.post_top_level_comment(pr_url, text)
            except mlsync.TransientExternalFailure as ex:
                logger.info('Could not relay the status of %s to %s, skipping: %s', branch, pr_url, ex)
                continue
            logger.info('  %s: %s', pr_url, info['section'])
            relayed.append(pr_url)

        # Recorded without a pull request, so replies to it are not mirrored
        metadata = {
            'message_id': lmsg.msgid,
            'status_update_for': relayed,
        }
        self.notes.set(lmsg.msgid, metadata, force_create=True)
        return metadata

    def handle_message(self, commit: str, raw: bytes, seen: Set[str],
                       pr_filter: Optional[Callable[[str], bool]] = None) -> Optional[dict]:
        try:
            lmsg = mlsync.parse_mail(raw)
        except mlsync.MalformedMessage as ex:
            logger.info('Skipping malformed message in %s: %s', commit, ex)
            return None
        if not lmsg.msgid:
            logger.info('Skipping message without a Message-Id in %s', commit)
            return None

        msgkey = mlsync.notes.GitNotes.hash_key(lmsg.msgid)
        if msgkey in seen:
            logger.info('Already handled: %s', lmsg.msgid)
            return None

        if mlsync.cooking.is_whats_cooking(lmsg, self.config.get('whats-cooking-from')):
            metadata = self.relay_status_update(lmsg, pr_filter=pr_filter)
            seen.add(msgkey)
            return metadata

        target = self.find_reply_target(lmsg, seen, pr_filter=pr_filter)
        if target is None:
            logger.info('Not related to any known pull request: %s', lmsg.msgid)
            return None

        try:
            metadata = self.mirror_message(lmsg, target)
        except mlsync.TransientExternalFailure as ex:
            # Not retried: the checkpoint moves past this message regardless
            logger.info('Could not mirror %s to %s, skipping: %s', lmsg.msgid, target['pull_request_url'], ex)
            return None

        # It is now known
        seen.add(msgkey)
        return metadata

    def process_mails(self, pr_filter: Optional[Callable[[str], bool]] = None) -> bool:
        tip = self.get_archive_tip()
        since = self.state.get('latest_revision')
        if since == tip:
            logger.debug('Mail archive is still at %s', tip)
            return False
        if not since:
            logger.info('No checkpoint recorded, treating all of %s as new', self.branch)

        seen = self.notes.get_keys()
        for commit, raw in self.iter_new_messages(since, tip):
            self.handle_message(commit, raw, seen, pr_filter=pr_filter)

        self.state['latest_revision'] = tip
        self.state['branch'] = self.branch
        self.save_state()
        return True

    def save_state(self) -> None:
        self.notes.set(self.config['state-key'], self.state, force_create=True)
        if self.notes.remote:
            self.notes.push()

    def init_tip(self, rev: Optional[str] = None) -> str:
        if rev is None:
            rev = self.branch
        tip = mlsync.git_revparse_obj(self.archive_gitdir, f'{rev}^{{commit}}')
        if not tip:
            raise mlsync.FatalEnumerationFailure(f'Could not resolve {rev} in {self.archive_gitdir}')
        self.state['latest_revision'] = tip
        self.state['branch'] = self.branch
        self.save_state()
        return tip
