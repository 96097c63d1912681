from typing import TypeAlias

LanguageId: TypeAlias = str
CommitId: TypeAlias = str
RepoLocator: TypeAlias = str
LogicalToolName: TypeAlias = str
