import os
import pathlib
from importlib import resources
from typing import Mapping, Optional, Protocol

import jinja2

from stackdeploy.aws.api.cloudformation import Parameters, Tags

# logical path of the template deployed when a stack configuration does not provide one
ENV_TEMPLATE_PATH = "environment/cf.yml"
PROJECT_TEMPLATE_PATH = "project/cf.yml"

TEMPLATE_SUFFIXES = (".yaml", ".yml", ".json")


class TemplateNotFound(Exception):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"template {path} not found")


class TemplateSource(Protocol):
    def get(self, path: str) -> str:
        """
        :param path: logical path of the template, e.g. ``environment/cf.yml``
        :returns: the template body
        :raises TemplateNotFound: if there is no template with the given path
        """
        ...


class PackagedTemplateSource:
    """Serves the templates shipped in the ``templates`` directory of this package."""

    def __init__(self, package: str = __package__, directory: str = "templates"):
        self._root = resources.files(package).joinpath(directory)

    def get(self, path: str) -> str:
        resource = self._root
        for part in pathlib.PurePosixPath(path).parts:
            resource = resource.joinpath(part)
        if not resource.is_file():
            raise TemplateNotFound(path)
        return resource.read_text(encoding="utf-8")


class InMemoryTemplateSource:
    def __init__(self, templates: Optional[Mapping[str, str]] = None):
        self._templates = dict(templates or {})

    def add(self, path: str, body: str) -> None:
        self._templates[path] = body

    def get(self, path: str) -> str:
        try:
            return self._templates[path]
        except KeyError:
            raise TemplateNotFound(path) from None


def load_template_file(file_path: str | os.PathLike) -> str:
    """
    Load a cloudformation template file (YAML or JSON).

    :param file_path: path to the file
    :returns: the contents of the file
    """
    file_path_obj = pathlib.Path(file_path)

    if file_path_obj.suffix not in TEMPLATE_SUFFIXES:
        raise ValueError(f"Unsupported suffix for template file: {file_path_obj.suffix}")
    if not file_path_obj.is_file():
        raise TemplateNotFound(str(file_path))

    return file_path_obj.read_text(encoding="utf-8")


def render_template(template_body: str, **template_vars) -> str:
    """render a template with jinja"""
    if template_vars:
        template_body = jinja2.Template(
            template_body, undefined=jinja2.StrictUndefined, keep_trailing_newline=True
        ).render(**template_vars)
    return template_body


class TemplateStackConfiguration:
    """
    A stack configuration assembled from plain values. The template is either given as body, loaded from a file,
    or looked up in a template source, and rendered with jinja using the given template variables.

    Example::

        config = TemplateStackConfiguration(
            "my-project-test",
            template_path=ENV_TEMPLATE_PATH,
            template_source=PackagedTemplateSource(),
            parameters={"ProjectName": "my-project", "EnvironmentName": "test"},
            tags={"stackdeploy-project": "my-project"},
        )
    """

    def __init__(
        self,
        stack_name: str,
        *,
        template_body: Optional[str] = None,
        template_file: Optional[str | os.PathLike] = None,
        template_path: Optional[str] = None,
        template_source: Optional[TemplateSource] = None,
        template_vars: Optional[Mapping[str, object]] = None,
        parameters: Optional[Mapping[str, str]] = None,
        tags: Optional[Mapping[str, str]] = None,
    ):
        if sum(x is not None for x in (template_body, template_file, template_path)) > 1:
            raise ValueError("only one of template_body, template_file and template_path can be set")
        if template_path is not None and template_source is None:
            raise ValueError("template_path requires a template_source")
        self._stack_name = stack_name
        self._template_body = template_body
        self._template_file = template_file
        self._template_path = template_path
        self._template_source = template_source
        self._template_vars = dict(template_vars or {})
        self._parameters = dict(parameters or {})
        self._tags = dict(tags or {})

    def stack_name(self) -> str:
        return self._stack_name

    def template(self) -> str:
        if self._template_file is not None:
            body = load_template_file(self._template_file)
        elif self._template_path is not None:
            body = self._template_source.get(self._template_path)
        else:
            body = self._template_body or ""
        return render_template(body, **self._template_vars)

    def parameters(self) -> Parameters:
        return [{"ParameterKey": k, "ParameterValue": v} for k, v in self._parameters.items()]

    def tags(self) -> Tags:
        return [{"Key": k, "Value": v} for k, v in sorted(self._tags.items())]


class TemplateStackSetConfiguration(TemplateStackConfiguration):
    """A stack set configuration assembled from plain values, see ``TemplateStackConfiguration``."""

    def __init__(
        self,
        stack_set_name: str,
        *,
        administration_role_arn: Optional[str] = None,
        execution_role_name: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(stack_set_name, **kwargs)
        self._administration_role_arn = administration_role_arn
        self._execution_role_name = execution_role_name

    def stack_set_name(self) -> str:
        return self._stack_name

    def administration_role_arn(self) -> Optional[str]:
        return self._administration_role_arn

    def execution_role_name(self) -> Optional[str]:
        return self._execution_role_name
