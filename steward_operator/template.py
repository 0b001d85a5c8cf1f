import jinja2
import yaml

from .config import settings


class Loader:
    """
    Class for returning objects created by rendering YAML templates from this package.
    """
    def __init__(self, **globals):
        # Create the package loader for the parent module of this one
        loader = jinja2.PackageLoader(self.__module__.rsplit(".", maxsplit = 1)[0])
        self.env = jinja2.Environment(loader = loader, autoescape = False)
        self.env.globals.update(globals)

    def load(self, template, **params):
        """
        Render the specified template with the given params, load the result as
        YAML and return it.
        """
        return yaml.safe_load(self.env.get_template(template).render(**params))

    def load_all(self, template, **params):
        """
        Render the specified template with the given params and return the list of
        YAML documents that it contains.
        """
        rendered = self.env.get_template(template).render(**params)
        return [doc for doc in yaml.safe_load_all(rendered) if doc]


default_loader = Loader(settings = settings)
