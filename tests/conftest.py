import pytest  # noqa
import mlsync
import os


class GitRepo:
    """Commits straight through plumbing so no worktree is needed."""

    def __init__(self, gitdir, branch='master'):
        self.gitdir = gitdir
        self.branch = branch

    def git(self, args, stdin=None):
        ecode, out = mlsync.git_run_command(self.gitdir, args, stdin=stdin, logstderr=True)
        assert ecode == 0, out
        return out.strip()

    def commit(self, files, message='test'):
        treelines = list()
        for path, content in files.items():
            if isinstance(content, str):
                content = content.encode()
            blob = self.git(['hash-object', '-w', '--stdin'], stdin=content)
            treelines.append(f'100644 blob {blob}\t{path}\n')
        tree = self.git(['mktree'], stdin=''.join(treelines).encode())
        args = ['commit-tree', tree, '-m', message]
        parent = mlsync.git_revparse_obj(self.gitdir, f'refs/heads/{self.branch}')
        if parent:
            args += ['-p', parent]
        commit = self.git(args)
        self.git(['update-ref', f'refs/heads/{self.branch}', commit])
        return commit

    def add_message(self, raw):
        # public-inbox v2 style, every commit replaces the "m" blob
        return self.commit({'m': raw}, message='mail')


def _init_repo(dest, bare=False):
    args = ['init', '-q', '--initial-branch=master']
    if bare:
        args.append('--bare')
    ecode, out = mlsync.git_run_command(None, args + [str(dest)], logstderr=True)
    assert ecode == 0, out
    return str(dest)


@pytest.fixture(scope="function", autouse=True)
def settestdefaults(tmp_path):
    os.environ['HOME'] = str(tmp_path)
    os.environ['GIT_CONFIG_NOSYSTEM'] = '1'
    os.environ['GIT_AUTHOR_NAME'] = 'Test Override'
    os.environ['GIT_AUTHOR_EMAIL'] = 'test-override@example.com'
    os.environ['GIT_COMMITTER_NAME'] = 'Test Override'
    os.environ['GIT_COMMITTER_EMAIL'] = 'test-override@example.com'
    os.environ.pop('GITHUB_TOKEN', None)


@pytest.fixture(scope="function")
def config():
    return dict(mlsync.DEFAULT_CONFIG)


@pytest.fixture(scope="function")
def gitdir(tmp_path):
    return _init_repo(tmp_path / 'repo')


@pytest.fixture(scope="function")
def notesrepo(gitdir):
    return GitRepo(gitdir)


@pytest.fixture(scope="function")
def archive(tmp_path):
    return GitRepo(_init_repo(tmp_path / 'archive.git', bare=True))


@pytest.fixture(scope="function")
def remotedir(tmp_path):
    return _init_repo(tmp_path / 'remote.git', bare=True)
